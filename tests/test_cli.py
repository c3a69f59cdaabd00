"""Tests for the memtier CLI."""

import json
from argparse import Namespace
from unittest.mock import MagicMock

import pytest

from memtier.cli import build_parser, cmd_consolidate, cmd_forget, cmd_store, main
from memtier.protocols import MemoryRejected
from memtier.results import ConsolidationResult, ForgetResult, ItemError


def run(capsys, *argv):
    code = main(["--no-log-file", *argv])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def run_json(capsys, *argv):
    code, out, _ = run(capsys, *argv, "--json")
    return code, json.loads(out)


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_defaults(self):
        args = build_parser().parse_args(["store", "acme", "u1", "Prefers email"])
        assert args.type == "fact"
        assert args.source == "explicit_statement"
        assert args.json is False

    def test_forget_spares_important_only_when_asked(self):
        args = build_parser().parse_args(["forget", "acme", "--id", "m1"])
        assert args.skip_important is False
        assert args.importance_threshold == 0.8

        args = build_parser().parse_args(["forget", "acme", "--skip-important"])
        assert args.skip_important is True

    def test_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["store", "acme", "u1", "x", "--type", "rumour"])


class TestCommands:
    def test_store_rejected(self, capsys):
        engine = MagicMock()
        engine.store.side_effect = MemoryRejected(0.05, 0.1)
        args = Namespace(
            tenant="acme",
            user="u1",
            type="context",
            content="ok",
            source="explicit_statement",
            scope=None,
            tag=None,
            json=False,
        )
        assert cmd_store(args, engine) == 2
        assert "Rejected" in capsys.readouterr().out

    def test_consolidate_errors_exit_nonzero(self, capsys):
        engine = MagicMock()
        engine.consolidate.return_value = ConsolidationResult(
            processed=2, kept=["a"], errors=[ItemError("b", "disk full")]
        )
        args = Namespace(
            tenant="acme",
            user=None,
            min_age_hours=24.0,
            batch_size=100,
            max_batches=1,
            merge=False,
            dry_run=False,
            json=False,
        )
        assert cmd_consolidate(args, engine) == 1
        out = capsys.readouterr().out
        assert "Consolidated 2 memories" in out
        assert "errors: 1" in out

    def test_forget_builds_criteria(self, capsys):
        engine = MagicMock()
        engine.forget.return_value = ForgetResult(forgotten=["a"], evaluated=3, skipped=["b"])
        args = Namespace(
            tenant="acme",
            user="u1",
            scope=None,
            type=["preference"],
            tag=None,
            id=None,
            decay_below=0.2,
            older_than_days=None,
            keyword=["tea"],
            skip_important=True,
            importance_threshold=0.7,
            hard=False,
            json=False,
        )
        assert cmd_forget(args, engine) == 0

        criteria = engine.forget.call_args.args[0]
        assert criteria.types == ["preference"]
        assert criteria.decay_threshold == 0.2
        assert criteria.contains_keywords == ["tea"]
        assert criteria.skip_high_importance is True
        assert criteria.importance_threshold == 0.7
        assert "Forgot 1 of 3 memories" in capsys.readouterr().out


class TestMain:
    """End to end against SQLite under MEMTIER_DATA_DIR."""

    def test_store_and_get(self, capsys):
        code, stored = run_json(capsys, "store", "acme", "u1", "User works at DNB", "--tag", "work")
        assert code == 0
        assert stored["reinforced"] is False
        memory = stored["memory"]
        assert memory["tags"] == ["work"]
        assert "embedding" not in memory

        code, fetched = run_json(capsys, "get", memory["id"])
        assert code == 0
        assert fetched["content"] == "User works at DNB"

        code, out, _ = run(capsys, "get", memory["id"])
        assert "[fact] User works at DNB" in out

    def test_store_twice_reinforces(self, capsys):
        run_json(capsys, "store", "acme", "u1", "Prefers tea over coffee", "--type", "preference")
        code, again = run_json(
            capsys, "store", "acme", "u1", "Prefers tea over coffee", "--type", "preference"
        )
        assert code == 0
        assert again["reinforced"] is True
        assert again["memory"]["confidence"]["reinforcements"] == 2

    def test_retrieve(self, capsys):
        run_json(capsys, "store", "acme", "u1", "User works at DNB")
        code, found = run_json(capsys, "retrieve", "acme", "u1", "User works at DNB")
        assert code == 0
        assert found["memories"][0]["memory"]["content"] == "User works at DNB"

        code, out, _ = run(capsys, "retrieve", "acme", "u2", "User works at DNB")
        assert code == 0
        assert "No memories found." in out

    def test_consolidate(self, capsys):
        run_json(capsys, "store", "acme", "u1", "User works at DNB")
        code, result = run_json(capsys, "consolidate", "acme", "--min-age-hours", "0", "--dry-run")
        assert code == 0
        assert result["dryRun"] is True
        assert result["counts"]["processed"] == 1

    def test_forget_and_cleanup(self, capsys):
        _, stored = run_json(capsys, "store", "acme", "u1", "User works at DNB")
        memory_id = stored["memory"]["id"]

        code, result = run_json(capsys, "forget", "acme", "--id", memory_id, "--hard")
        assert code == 0
        assert result["forgotten"] == [memory_id]

        code, _, _ = run(capsys, "get", memory_id)
        assert code == 1

        code, cleaned = run_json(capsys, "cleanup")
        assert code == 0
        assert cleaned == {"removed": 0}

    def test_rejection_exit_code(self, capsys, monkeypatch):
        monkeypatch.setenv("MEMTIER_MIN_IMPORTANCE", "0.99")
        code, result = run_json(capsys, "store", "acme", "u1", "ok")
        assert code == 2
        assert result["rejected"] is True

    def test_bad_config(self, capsys, monkeypatch):
        monkeypatch.setenv("MEMTIER_STORAGE", "redis")
        code, _, err = run(capsys, "cleanup")
        assert code == 1
        assert "Error:" in err

    def test_validation_error(self, capsys):
        code, _, err = run(capsys, "retrieve", "acme", "u1", "   ")
        assert code == 1
        assert "Error:" in err
