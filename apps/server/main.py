"""cpullm server entrypoint (FastAPI + Ollama-style /api/generate).

Example:
    python -m apps.server.main --model google/gemma-2b-it --host 0.0.0.0 --port 8080
    python -m apps.server.main --model ./models/gemma-2b-it --interactive
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Callable

from apps.server.app import create_app
from cpullm.engine.engine import EngineConfig, LlmEngine
from cpullm.engine.registry import list_runtimes
from cpullm.engine.types import GenerationRequest, StopReason
from cpullm.runtime import cpu_capability, resolve_thread_count

EXIT_COMMANDS = frozenset({"exit", "quit", "sair"})


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"{name} must be an integer, got {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="cpullm CPU inference server")
    p.add_argument(
        "--model",
        default=os.environ.get("CPULLM_MODEL"),
        help="Model path or HF repo id (env: CPULLM_MODEL)",
    )
    p.add_argument(
        "--runtime",
        default="transformers",
        choices=list_runtimes(),
        help="Model runtime (default: transformers)",
    )
    p.add_argument(
        "--host",
        default=os.environ.get("CPULLM_HOST", "0.0.0.0"),
        help="Bind host (default: 0.0.0.0, env: CPULLM_HOST)",
    )
    p.add_argument(
        "--port",
        type=int,
        default=_env_int("CPULLM_PORT", 8080),
        help="Bind port (default: 8080, env: CPULLM_PORT)",
    )
    p.add_argument("--n-ctx", type=int, default=2048, help="Context window in tokens (default: 2048)")
    p.add_argument("--threads", type=int, default=0, help="CPU threads (0 = all available, default: 0)")
    p.add_argument("--dtype", default="float32", help="Torch dtype: float32|bfloat16|float16 (default: float32)")
    p.add_argument("--greedy", action="store_true", help="Arg-max selection instead of sampling")
    p.add_argument("--seed", type=int, default=None, help="Seed for stochastic selection")
    p.add_argument(
        "--request-timeout",
        type=float,
        default=0.0,
        help="Per-request generation deadline in seconds (0 = none)",
    )
    p.add_argument(
        "--http-max-concurrency",
        type=int,
        default=0,
        help="Max in-flight /api/generate requests (0 = unlimited)",
    )
    p.add_argument(
        "--http-max-completion-tokens",
        type=int,
        default=0,
        help="Reject requests with max_tokens above this cap (0 = unlimited)",
    )
    p.add_argument("--interactive", action="store_true", help="Read prompts from stdin instead of serving HTTP")
    p.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level (default: info)",
    )
    return p


def _dtype_from_string(dtype: str) -> Any:
    try:
        import torch
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("torch is required to run the server.") from exc

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def engine_config_from_args(args: argparse.Namespace) -> EngineConfig:
    if args.n_ctx <= 0:
        raise ValueError("--n-ctx must be > 0")
    return EngineConfig(
        context_size=int(args.n_ctx),
        thread_count=resolve_thread_count(args.threads),
        greedy=bool(args.greedy),
        seed=args.seed,
        request_timeout_s=None if args.request_timeout <= 0 else float(args.request_timeout),
    )


def run_interactive(
    engine: LlmEngine,
    *,
    read_line: Callable[[str], str] = input,
    write: Callable[[str], Any] = print,
) -> int:
    """Prompt loop on stdin. Returns the number of prompts answered."""
    write("Interactive mode. Type 'exit', 'quit' or 'sair' to finish.")
    answered = 0
    while True:
        try:
            line = read_line("\nPrompt: ")
        except EOFError:
            break
        line = line.strip()
        if line in EXIT_COMMANDS:
            break
        if not line:
            continue

        write("Processing...")
        result = engine.generate(GenerationRequest(user_prompt=line))
        if result.stop_reason is StopReason.ERROR:
            write(f"Error ({result.error.reason}): {result.error}")
            if result.text:
                write(f"Partial response: {result.text}")
        else:
            write(f"Response: {result.text}")
        answered += 1
    write("Interactive mode finished.")
    return answered


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if not args.model:
        raise SystemExit("--model is required (or set CPULLM_MODEL)")

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = engine_config_from_args(args)
    print(f"[server] cpu capability: {cpu_capability()}", flush=True)

    engine = LlmEngine(config=config, runtime_name=args.runtime)
    print(
        "[server] loading model... "
        f"model={args.model!r} runtime={args.runtime!r} dtype={args.dtype!r} "
        f"n_ctx={config.context_size} threads={config.thread_count}",
        flush=True,
    )
    engine.load(args.model, dtype=_dtype_from_string(args.dtype))
    info = engine.model_info
    print(f"[server] model loaded (n_ctx={info.n_ctx}, n_vocab={info.n_vocab})", flush=True)

    try:
        if args.interactive:
            run_interactive(engine)
            return

        model_id = os.path.basename(args.model.rstrip("/")) or args.model
        app = create_app(
            engine=engine,
            model_id=model_id,
            http_max_concurrency=None if args.http_max_concurrency <= 0 else int(args.http_max_concurrency),
            http_max_completion_tokens=None
            if args.http_max_completion_tokens <= 0
            else int(args.http_max_completion_tokens),
        )

        try:
            import uvicorn
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("uvicorn is required to run the server.") from exc

        print(f"[server] listening on http://{args.host}:{args.port}", flush=True)
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
        )
    finally:
        engine.shutdown()
        print("[server] stopped", flush=True)


if __name__ == "__main__":
    main()
