"""Tests for settings and CLI wiring."""

from __future__ import annotations

import pytest

from docgraph_ingest.cli.main import build_parser, cmd_run, cmd_version
from docgraph_ingest.settings import DocgraphSettings


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DOCGRAPH_IN_FLIGHT_WINDOW", "3")
        monkeypatch.setenv("DOCGRAPH_ON_UNRESOLVED", "fatal")
        monkeypatch.setenv("DOCGRAPH_FILTERS", '[{"field": "act.data.creator", "value": "bob"}]')

        s = DocgraphSettings()

        assert s.in_flight_window == 3
        assert s.on_unresolved == "fatal"
        assert s.filters == [{"field": "act.data.creator", "value": "bob"}]

    def test_defaults_target_document_contract(self):
        s = DocgraphSettings()
        assert s.contract == "docs.hypha"
        assert s.action == "created"
        assert s.read_until == "0"

    def test_invalid_policy(self, monkeypatch):
        monkeypatch.setenv("DOCGRAPH_ON_RESOLVE_ERROR", "explode")
        with pytest.raises(ValueError):
            DocgraphSettings()


class TestParser:
    def test_run_arguments(self):
        args = build_parser().parse_args(
            ["run", "--start-from", "0", "--window", "4", "--store", "memory"]
        )
        assert args.func is cmd_run
        assert args.start_from == "0"
        assert args.window == 4
        assert args.store == "memory"

    def test_run_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.start_from is None
        assert args.window is None
        assert args.store == "neo4j"

    def test_resolve_requires_hash(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["resolve"])

    def test_version(self, capsys):
        assert cmd_version() == 0
        assert capsys.readouterr().out.strip() == "0.1.0"
