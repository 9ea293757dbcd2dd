"""`cpullm` CLI (HTTP client).

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from apps.cli.client import DEFAULT_URL, CpuLlmClient, HttpError
from apps.cli.output import format_generation_stats, format_table, print_json


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cpullm", description="cpullm CLI (HTTP client)")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server base URL (default: %(default)s)",
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Request timeout in seconds (default: 300)",
    )

    sub = p.add_subparsers(dest="command")

    sub.add_parser("health", help="Check server health")

    model_p = sub.add_parser("model", help="Show the loaded model")
    model_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    gen = sub.add_parser("generate", help="Generate a completion")
    gen.add_argument("prompt", help="User prompt")
    gen.add_argument("--system", default=None, help="System prompt prepended before the user turn")
    gen.add_argument("--max-tokens", type=int, default=None, help="Max completion tokens (server default: 128)")
    gen.add_argument("--temperature", type=float, default=None, help="Sampling temperature (server default: 0.8)")
    gen.add_argument("--top-k", type=int, default=None, help="Top-k filter (server default: 40)")
    gen.add_argument("--top-p", type=float, default=None, help="Top-p (nucleus) filter (server default: 0.9)")
    gen.add_argument(
        "--repeat-penalty",
        type=float,
        default=None,
        help="Repetition penalty (server default: 1.1)",
    )
    gen.add_argument("--stats", action="store_true", help="Print token counts and timing to stderr")
    gen.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def _print_http_error(exc: HttpError) -> None:
    payload = exc.error_payload()
    if payload is not None and payload.get("error"):
        print(f"error: {payload['error']} (status={exc.status_code})", file=sys.stderr)
        partial = payload.get("response")
        if partial:
            print(f"partial response: {partial}", file=sys.stderr)
        return
    print(str(exc), file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    if not args.command:
        parser.print_help()
        return 2

    client = CpuLlmClient(base_url=args.url, timeout_s=args.timeout)

    try:
        if args.command == "health":
            result = client.health()
            print(result.get("status", "unknown"))
            return 0 if result.get("status") == "ok" else 1

        if args.command == "model":
            result = client.model()
            if args.json:
                print_json(result)
                return 0
            rows = [[str(k), "" if result.get(k) is None else str(result.get(k))] for k in ("model", "loaded", "n_ctx", "n_vocab")]
            print(format_table(["field", "value"], rows))
            return 0

        if args.command == "generate":
            result = client.generate(
                args.prompt,
                system=args.system,
                max_tokens=args.max_tokens,
                temperature=args.temperature,
                top_k=args.top_k,
                top_p=args.top_p,
                repeat_penalty=args.repeat_penalty,
            )
            if args.json:
                print_json(result)
            else:
                print(result["response"])
            if args.stats:
                print(format_generation_stats(result), file=sys.stderr)
            return 0
    except HttpError as exc:
        _print_http_error(exc)
        return 1

    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
