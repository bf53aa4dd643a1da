import json
import logging

import deepresearch_cli
from deepresearch.schemas import RunResult


def test_configure_logging_levels():
    assert deepresearch_cli.configure_logging("debug") == logging.DEBUG
    assert deepresearch_cli.configure_logging("WARNING") == logging.WARNING
    assert deepresearch_cli.configure_logging("chatty") == logging.INFO
    assert deepresearch_cli.configure_logging(None) == logging.INFO
    assert logging.getLogger().level == logging.INFO


def test_settings_command_masks_api_key(tmp_path, capsys):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"max_depth": 4, "llm": {"api_key": "sk-secret"}}))

    assert deepresearch_cli.main(["--config", str(config_path), "settings"]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert printed["max_depth"] == 4
    assert printed["llm"]["api_key"] == "********"


def test_run_command_applies_overrides(tmp_path, monkeypatch, capsys):
    seen = {}

    class StubOrchestrator:
        def __init__(self, question, settings):
            seen["question"] = question
            seen["settings"] = settings

        def execute(self):
            return RunResult(
                success=True,
                run_id="run1",
                report_path=str(tmp_path / "final_report.md"),
                outcome="finalize_full",
                budget={"total": 10, "budget": 500},
            )

    monkeypatch.setattr(deepresearch_cli, "Orchestrator", StubOrchestrator)
    code = deepresearch_cli.main(
        ["--config", str(tmp_path / "none.json"), "run", "Why?", "--max-depth", "2", "--token-budget", "500"]
    )

    assert code == 0
    assert seen["question"] == "Why?"
    assert seen["settings"].max_depth == 2
    assert seen["settings"].token_budget == 500
    out = capsys.readouterr().out
    assert "Run: run1 (finalize_full)" in out
    assert "Tokens: 10/500" in out


def test_run_command_reports_failure(tmp_path, monkeypatch, capsys):
    class FailingOrchestrator:
        def __init__(self, question, settings):
            pass

        def execute(self):
            return RunResult(success=False, run_id="run2", error="planner gave up")

    monkeypatch.setattr(deepresearch_cli, "Orchestrator", FailingOrchestrator)
    assert deepresearch_cli.main(["--config", str(tmp_path / "none.json"), "run", "Why?"]) == 1
    assert "planner gave up" in capsys.readouterr().out


def test_batch_command_with_empty_file(tmp_path, capsys):
    questions = tmp_path / "questions.txt"
    questions.write_text("\n  \n")
    assert deepresearch_cli.main(["--config", str(tmp_path / "none.json"), "batch", str(questions)]) == 1
    assert "No questions found." in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert deepresearch_cli.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()
