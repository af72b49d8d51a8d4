"""Entry point for `python -m mobile_flow` and the `mobile-flow` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mobile_flow.checkpoint import build_checkpointer
from mobile_flow.commands import CommandRunner
from mobile_flow.errors import WorkflowError
from mobile_flow.executor import GraphExecutor
from mobile_flow.graph import WorkflowGraph
from mobile_flow.mobile_workflow import MobileServices, build_mobile_workflow
from mobile_flow.models import ProgressUpdate, ResumeToken
from mobile_flow.prd_workflow import build_prd_workflow
from mobile_flow.settings import RuntimeSettings
from mobile_flow.tools import LLMToolGateway, ToolGateway

logger = logging.getLogger("mobile_flow")

WORKFLOW_CHOICES = ["mobile", "prd"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run or resume a mobile_flow workflow thread")
    parser.add_argument("--workflow", required=True, choices=WORKFLOW_CHOICES, help="Workflow graph to run")
    parser.add_argument("--thread-id", required=True, help="Stable identifier of the workflow thread")
    parser.add_argument("--input-json", default=None, help="JSON object with initial or additional state")
    parser.add_argument("--resume-json", default=None, help="JSON object answering the pending interrupt")
    parser.add_argument(
        "--resume-token-json",
        default=None,
        help="JSON resume token printed by the interrupted run (optional with --resume-json)",
    )
    parser.add_argument(
        "--tool-gateway",
        default="human",
        choices=["human", "llm"],
        help="Answer tools by suspending for a human (default) or with the OpenAI model",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Root that relative state-store and project paths resolve against (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def _load_json_object(raw: str | None, flag: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{flag} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"{flag} must be a JSON object")
    return value


def _report_progress(update: ProgressUpdate) -> None:
    logger.info("[%3d%%] %s (%.0fs)", update.progress, update.phase, update.elapsed_seconds)


def build_graph(
    workflow: str, settings: RuntimeSettings, repo_root: Path, gateway: ToolGateway | None
) -> WorkflowGraph:
    if workflow == "mobile":
        services = MobileServices(
            settings=settings,
            repo_root=repo_root,
            runner=CommandRunner(default_timeout=settings.command_timeout_seconds),
            gateway=gateway,
            progress_reporter=_report_progress,
        )
        return build_mobile_workflow(services)
    return build_prd_workflow(
        output_directory=settings.state_store_path(repo_root) / "prd",
        gateway=gateway,
        gap_score_threshold=settings.gap_score_threshold,
    )


def _emit(document: dict[str, Any]) -> None:
    print(json.dumps(document, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = (args.repo_root or Path.cwd()).resolve()

    try:
        if not args.thread_id.strip():
            raise ValueError("--thread-id must be non-empty")
        settings = RuntimeSettings.from_env()
        input_patch = _load_json_object(args.input_json, "--input-json")
        resume_payload = _load_json_object(args.resume_json, "--resume-json")
        token_payload = _load_json_object(args.resume_token_json, "--resume-token-json")
        if input_patch is not None and resume_payload is not None:
            raise ValueError("--input-json cannot be combined with --resume-json")
        if token_payload is not None and resume_payload is None:
            raise ValueError("--resume-token-json requires --resume-json")
        resume_token = ResumeToken.model_validate(token_payload) if token_payload is not None else None
    except (ValueError, ValidationError) as exc:
        logging.error("Invalid input: %s", exc)
        _emit({"status": "error", "error": str(exc)})
        return 1

    gateway: ToolGateway | None = None
    if args.tool_gateway == "llm":
        gateway = LLMToolGateway(model_name=settings.model, repo_root=repo_root)

    graph = build_graph(args.workflow, settings, repo_root, gateway)
    checkpointer = build_checkpointer(
        settings.checkpoint_backend,
        state_store=settings.state_store_path(repo_root),
        checkpoint_db=settings.checkpoint_path(repo_root),
    )
    executor = GraphExecutor(
        graph,
        checkpointer,
        recursion_limit=settings.recursion_limit,
        conflict_policy=settings.conflict_policy,
    )

    try:
        result = executor.run(
            args.thread_id,
            resume_payload if resume_payload is not None else input_patch,
            resume_token=resume_token,
        )
    except WorkflowError as exc:
        logging.error("Workflow %s thread %s stopped: %s", args.workflow, args.thread_id, exc)
        _emit({"status": "error", "error": str(exc), "error_type": type(exc).__name__})
        return 1

    _emit(result.model_dump(mode="json"))
    return 1 if result.status == "failed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
