from __future__ import annotations

import json
from typing import Any, Iterable, Sequence


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows_list = [list(r) for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r):
            if i >= len(widths):
                break
            widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        return "  ".join(c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)).rstrip()

    out = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    out.extend(fmt_row(r) for r in rows_list)
    return "\n".join(out)


def format_generation_stats(result: dict[str, Any]) -> str:
    """One-line summary of token counts and timing from a generate response."""
    prompt_n = int(result.get("prompt_eval_count") or 0)
    eval_n = int(result.get("eval_count") or 0)
    total_ns = int(result.get("total_duration") or 0)
    total_s = total_ns / 1e9
    parts = [
        f"prompt={prompt_n} tok",
        f"completion={eval_n} tok",
        f"total={total_s:.2f}s",
    ]
    if total_s > 0 and eval_n > 0:
        parts.append(f"{eval_n / total_s:.1f} tok/s")
    reason = result.get("done_reason")
    if reason:
        parts.append(f"reason={reason}")
    return " ".join(parts)
