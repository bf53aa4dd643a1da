import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from deepresearch.config import CONFIG_PATH, ResearchSettings, load_settings
from deepresearch.orchestrator import Orchestrator, ParallelResearch


LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(level: Optional[str] = "info") -> int:
    resolved = LOG_LEVELS.get(str(level or "").strip().lower(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)
    return resolved


def _settings_from_args(args: argparse.Namespace) -> ResearchSettings:
    settings = load_settings(config_path=Path(args.config) if args.config else CONFIG_PATH)
    overrides = {}
    if getattr(args, "max_depth", None) is not None:
        overrides["max_depth"] = args.max_depth
    if getattr(args, "token_budget", None) is not None:
        overrides["token_budget"] = args.token_budget
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def run_research(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    settings = _settings_from_args(args)
    result = Orchestrator(args.question, settings=settings).execute()
    if not result.success:
        print(f"Research failed ({result.run_id}): {result.error}")
        return 1
    print(f"Run: {result.run_id} ({result.outcome})")
    print(f"Report: {result.report_path}")
    budget = result.budget or {}
    print(f"Tokens: {budget.get('total', 0)}/{budget.get('budget', 0)}")
    return 0


def run_batch(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    settings = _settings_from_args(args)
    lines = Path(args.questions_file).read_text(encoding="utf-8").splitlines()
    questions = [line.strip() for line in lines if line.strip()]
    if not questions:
        print("No questions found.")
        return 1
    outcome = ParallelResearch(settings=settings, max_workers=args.max_workers).run(questions)
    for question_id, result in sorted(outcome["results"].items()):
        if result.get("success"):
            print(f"{question_id}: {result.get('report_path')}")
        else:
            print(f"{question_id}: FAILED {result.get('error')}")
    summary = outcome.get("summary") or {}
    return 0 if summary.get("failed", 0) == 0 else 1


def run_settings(args: argparse.Namespace) -> int:
    settings = load_settings(config_path=Path(args.config) if args.config else CONFIG_PATH)
    print(json.dumps(settings.to_safe_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deep research CLI")
    parser.add_argument("--config", default=None, help="Path to config.json")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Research a single question")
    run.add_argument("question", help="Research question")
    run.add_argument("--max-depth", type=int, default=None, help="Maximum research rounds")
    run.add_argument("--token-budget", type=int, default=None, help="Total token budget")
    run.add_argument("--log-level", default="info", help="debug|info|warning|error|critical")

    batch = subparsers.add_parser("batch", help="Research several questions in parallel")
    batch.add_argument("questions_file", help="File with one question per line")
    batch.add_argument("--max-depth", type=int, default=None, help="Maximum research rounds")
    batch.add_argument("--token-budget", type=int, default=None, help="Token budget per question")
    batch.add_argument("--max-workers", type=int, default=None, help="Parallel runs (default: one per question)")
    batch.add_argument("--log-level", default="info", help="debug|info|warning|error|critical")

    subparsers.add_parser("settings", help="Show effective settings (secrets masked)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return run_research(args)
    if args.command == "batch":
        return run_batch(args)
    if args.command == "settings":
        return run_settings(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
