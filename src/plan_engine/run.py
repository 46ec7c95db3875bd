# run.py
# Entry point. Config and wiring only — no logic lives here.
#
# Defaults come from the environment (a .env file is honoured):
#   PLAN_ENGINE_MAX_ITERATIONS, PLAN_ENGINE_MAX_TOKENS, PLAN_ENGINE_TIMEOUT_MS,
#   PLAN_ENGINE_STORE_DIR, PLAN_ENGINE_PROVIDER, PLAN_ENGINE_MODEL,
#   PLAN_ENGINE_LOG_LEVEL

import argparse
import asyncio
import logging
import os
import uuid

from dotenv import load_dotenv

from plan_engine import display
from plan_engine.engine import PlanExecutionEngine, RunContext
from plan_engine.errors import PlanEngineError, StorageError
from plan_engine.models import ExecutionStatus, Plan
from plan_engine.providers import DEFAULT_MODEL, LocalMockAdapter, ModelProvider, OpenAIAdapter
from plan_engine.stores import FileArtifactStore

load_dotenv()


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    return int(value) if value else default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plan-engine", description="Execute a plan file under budgets.")
    parser.add_argument("plan_file", help="Path to a plan JSON file.")
    parser.add_argument("--repo", default=".", help="Repository path passed to each step.")
    parser.add_argument("--run-id", default=None, help="Run id (default: random).")
    parser.add_argument("--max-iterations", type=int, default=_env_int("PLAN_ENGINE_MAX_ITERATIONS", 20))
    parser.add_argument("--max-tokens", type=int, default=_env_int("PLAN_ENGINE_MAX_TOKENS", 100_000))
    parser.add_argument("--timeout-ms", type=int, default=_env_int("PLAN_ENGINE_TIMEOUT_MS", None))
    parser.add_argument("--store-dir", default=os.getenv("PLAN_ENGINE_STORE_DIR", ".plan-engine"))
    parser.add_argument(
        "--provider",
        choices=("mock", "openai"),
        default=os.getenv("PLAN_ENGINE_PROVIDER", "mock"),
    )
    parser.add_argument("--model", default=os.getenv("PLAN_ENGINE_MODEL", DEFAULT_MODEL))
    parser.add_argument("--record-outputs", action="store_true", help="Save each step output and the run trace as artifacts.")
    parser.add_argument("--show-logs", action="store_true", help="Print the run log after the summary.")
    return parser


def build_provider(args: argparse.Namespace) -> ModelProvider:
    if args.provider == "openai":
        return OpenAIAdapter(model=args.model)
    return LocalMockAdapter()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=os.getenv("PLAN_ENGINE_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        plan = Plan.from_json_file(args.plan_file)
        provider = build_provider(args)
        store = FileArtifactStore(args.store_dir)
        engine = PlanExecutionEngine(
            max_iterations=args.max_iterations,
            max_tokens=args.max_tokens,
            max_execution_time_ms=args.timeout_ms,
            model_provider=provider,
            artifact_store=store,
            record_outputs=args.record_outputs,
        )
    except (OSError, ValueError, PlanEngineError) as exc:
        display.halt(str(exc))
        return 2

    run_id = args.run_id or f"run-{uuid.uuid4().hex[:12]}"
    context = RunContext.create(run_id, store)
    display.plan_loaded(plan, provider.name)

    try:
        state = asyncio.run(engine.execute(plan, args.repo, run_id, context=context))
    except StorageError as exc:
        display.halt(str(exc))
        if exc.state is not None:
            display.run_summary(exc.state, plan)
        return 1

    display.run_summary(state, plan)
    if args.show_logs:
        display.log_table(context.logger.get_logs())
    return 0 if state.status is ExecutionStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
