"""Tests for the entry point: env options, source merging and output."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import yaml

from proxydedup.engine import DedupOptions, DeduplicationEngine, DuplicateAction
from proxydedup.main import options_from_env, process_sources, run, run_engine
from proxydedup.models import ProxyType
from proxydedup.output import generate_clash_yaml


class TestOptionsFromEnv:
    def test_defaults(self):
        options = options_from_env({})
        assert options.action is DuplicateAction.DELETE
        assert options.keep_first is True
        assert options.batch_size == 5000
        assert options.reconcile_scores is False

    def test_overrides(self):
        options = options_from_env({
            "DEDUP_ACTION": "rename",
            "DEDUP_KEEP_FIRST": "false",
            "DEDUP_BATCH_SIZE": "100",
            "DEDUP_RECONCILE": "yes",
            "DEDUP_LINK": "_",
            "DEDUP_POSITION": "front",
        })
        assert options.action is DuplicateAction.RENAME
        assert options.keep_first is False
        assert options.batch_size == 100
        assert options.reconcile_scores is True
        assert options.link == "_"
        assert options.position == "front"

    def test_invalid_position(self):
        with pytest.raises(ValueError):
            options_from_env({"DEDUP_POSITION": "middle"})


class TestProcessSources:
    @pytest.mark.asyncio
    async def test_merges_in_source_order(self, make_node):
        first = [make_node(name="a1"), make_node(name="a2", server="2.2.2.2")]
        second = [make_node(name="b1", server="2.2.2.2"), make_node(name="b2", server="3.3.3.3")]
        engine = DeduplicationEngine()

        with patch("proxydedup.main.load_sources", new_callable=AsyncMock, return_value=[first, second]):
            result = await process_sources([("s1", "x"), ("s2", "y")], DedupOptions(), engine)

        assert [n.name for n in result] == ["a1", "a2", "b2"]
        assert engine.get_stats().duplicates_removed == 1

    @pytest.mark.asyncio
    async def test_empty_source_skipped(self, make_node, caplog):
        nodes = [make_node(name="a")]
        with patch("proxydedup.main.load_sources", new_callable=AsyncMock, return_value=[[], nodes]):
            with caplog.at_level("WARNING", logger="proxydedup"):
                result = await process_sources([("empty", "x"), ("full", "y")], DedupOptions())
        assert result == nodes
        assert "empty" in caplog.text

    @pytest.mark.asyncio
    async def test_all_empty(self):
        with patch("proxydedup.main.load_sources", new_callable=AsyncMock, return_value=[[]]):
            assert await process_sources([("s", "x")], DedupOptions()) == []

    def test_run_engine_by_type(self, make_node):
        nodes = [make_node(name="a"), make_node(name="s", proxy_type=ProxyType.SS)]
        engine = DeduplicationEngine()
        with patch.object(engine, "deduplicate_by_type", wraps=engine.deduplicate_by_type) as spy:
            assert len(run_engine(engine, nodes, DedupOptions(), by_type=True)) == 2
        spy.assert_called_once()


class TestRun:
    @pytest.mark.asyncio
    async def test_missing_sources_exits(self, monkeypatch):
        monkeypatch.delenv("DEDUP_SOURCES", raising=False)
        with pytest.raises(SystemExit):
            await run()

    @pytest.mark.asyncio
    async def test_invalid_options_exit(self, monkeypatch):
        monkeypatch.setenv("DEDUP_SOURCES", "./nodes.yaml")
        monkeypatch.setenv("DEDUP_ACTION", "merge")
        with pytest.raises(SystemExit):
            await run()

    @pytest.mark.asyncio
    async def test_writes_output(self, monkeypatch, tmp_path, make_node):
        out = tmp_path / "out.yaml"
        monkeypatch.setenv("DEDUP_SOURCES", "sub|https://example.com/a\n./b.yaml")
        monkeypatch.setenv("DEDUP_OUTPUT", str(out))
        monkeypatch.setenv("DEDUP_UNIFY_SNI", "true")
        a = make_node(name="a", proxy_type=ProxyType.TROJAN, password="pw", sni="x.com")
        b = make_node(name="b", proxy_type=ProxyType.TROJAN, password="pw", host="x.com")

        loader = AsyncMock(return_value=[[a], [b]])
        with patch("proxydedup.main.load_sources", loader):
            await run()

        loader.assert_awaited_once_with(["https://example.com/a", "./b.yaml"])
        data = yaml.safe_load(out.read_text(encoding="utf-8"))
        assert [p["name"] for p in data["proxies"]] == ["a"]


class TestOutput:
    def test_round_trips_fields(self, make_node):
        node = make_node(name="节点", proxy_type=ProxyType.SS, cipher="aes-128-gcm", password="pw")
        content = generate_clash_yaml([node])
        assert "节点" in content
        data = yaml.safe_load(content)
        assert data["proxies"][0] == {
            "name": "节点", "type": "ss", "server": "1.1.1.1", "port": 443,
            "cipher": "aes-128-gcm", "password": "pw",
        }

    def test_empty(self):
        assert yaml.safe_load(generate_clash_yaml([])) == {"proxies": []}
