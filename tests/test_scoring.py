"""Tests for completeness scoring."""

from __future__ import annotations

import pytest

from proxydedup.models import ProxyType
from proxydedup.scoring import (
    CompletenessStrategy,
    ScoringEngine,
    ScoringStrategy,
    TrojanStrategy,
    VMessStrategy,
    basic_completeness,
)


class _Fixed(ScoringStrategy):
    def __init__(self, value, weight=1.0):
        super().__init__(f"Fixed{value}", weight)
        self.value = value

    def calculate_score(self, node, context):
        return self.value


class _Broken(ScoringStrategy):
    def __init__(self):
        super().__init__("Broken")

    def calculate_score(self, node, context):
        raise ValueError("broken strategy")


class TestStrategies:
    def test_completeness_full(self, make_node):
        node = make_node(name="n", password="pw")
        assert CompletenessStrategy().calculate_score(node, {}) == pytest.approx(100.0)

    def test_completeness_missing_optional(self, make_node):
        node = make_node(name="", proxy_type=ProxyType.SS)
        assert CompletenessStrategy().calculate_score(node, {}) == pytest.approx(60.0)

    def test_vmess_tls_object_beats_plain(self, make_node):
        strategy = VMessStrategy()
        plain = make_node()
        tls = make_node(tls={"enabled": True, "serverName": "a.com"})
        assert strategy.calculate_score(tls, {}) > strategy.calculate_score(plain, {})

    def test_vmess_only_applies_to_vmess(self, make_node):
        assert VMessStrategy().is_applicable(make_node())
        assert not VMessStrategy().is_applicable(make_node(proxy_type=ProxyType.SS))

    def test_trojan_password_strength(self):
        strategy = TrojanStrategy()
        assert strategy.password_score("") == 0
        assert strategy.password_score("abc") == 60
        assert strategy.password_score("Abcdefgh12345678") == 100

    def test_description(self):
        assert VMessStrategy().description == "VMess scoring strategy"

    def test_vmess_reads_clash_ws_opts(self, make_node):
        strategy = VMessStrategy()
        flat = make_node(network="ws", path="/p", host="h.com")
        clash = make_node(network="ws", **{"ws-opts": {"path": "/p", "headers": {"Host": "h.com"}}})
        bare = make_node(network="ws")
        assert strategy.calculate_score(clash, {}) == strategy.calculate_score(flat, {})
        assert strategy.calculate_score(clash, {}) > strategy.calculate_score(bare, {})

    def test_vmess_tls_object_enabled_by_default(self, make_node):
        """A TLS object without `enabled` counts as TLS on, as in the identity key."""
        strategy = VMessStrategy()
        implicit = make_node(tls={"serverName": "a.com"})
        explicit = make_node(tls={"enabled": True, "serverName": "a.com"})
        assert strategy.calculate_score(implicit, {}) == strategy.calculate_score(explicit, {})

    def test_trojan_server_name_aliases(self, make_node):
        strategy = TrojanStrategy()
        servername = make_node(proxy_type=ProxyType.TROJAN, password="pw", servername="a.com")
        sni = make_node(proxy_type=ProxyType.TROJAN, password="pw", sni="a.com")
        none = make_node(proxy_type=ProxyType.TROJAN, password="pw")
        assert strategy.calculate_score(servername, {}) == strategy.calculate_score(sni, {})
        assert strategy.calculate_score(sni, {}) > strategy.calculate_score(none, {})

    def test_snell_psk_counts_as_password(self, make_node):
        node = make_node(proxy_type=ProxyType.SNELL, psk="secret")
        bare = make_node(proxy_type=ProxyType.SNELL)
        assert basic_completeness(node) == basic_completeness(bare) + 20


class TestScoringEngine:
    def test_weighted_average(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Fixed(80, weight=3.0))
        engine.register_strategy(_Fixed(40, weight=1.0))
        result = engine.calculate_score(make_node())
        assert result.total_score == pytest.approx(70.0)
        assert result.max_possible_score == 100.0
        assert len(result.strategy_results) == 2
        assert not result.fallback_used

    def test_score_is_clamped(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Fixed(500))
        assert engine.score(make_node()) == 100.0

    def test_protocol_scope(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Fixed(10), ProxyType.TROJAN)
        trojan = make_node(proxy_type=ProxyType.TROJAN, password="pw")
        assert [s.name for s in engine.applicable_strategies(trojan)] == ["Fixed10"]
        assert engine.applicable_strategies(make_node()) == []

    def test_failing_strategy_is_excluded(self, make_node, caplog):
        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Broken())
        engine.register_strategy(_Fixed(50))
        with caplog.at_level("ERROR", logger="proxydedup.scoring"):
            result = engine.calculate_score(make_node())
        assert result.total_score == pytest.approx(50.0)
        assert [r["strategy"] for r in result.strategy_results] == ["Fixed50"]
        assert "Broken" in caplog.text

    def test_all_strategies_failing_uses_fallback(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Broken())
        node = make_node(name="n")
        assert engine.calculate_score(node).fallback_used
        assert engine.score(node) == float(basic_completeness(node))

    def test_no_strategy_uses_fallback(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        node = make_node(proxy_type=ProxyType.SS, password="pw", cipher="aes-128-gcm")
        assert engine.calculate_score(node).fallback_used
        assert engine.score(node) == float(basic_completeness(node))

    def test_disabled_strategy_skipped(self, make_node):
        engine = ScoringEngine(register_defaults=False)
        strategy = _Fixed(50)
        strategy.enabled = False
        engine.register_strategy(strategy)
        assert engine.applicable_strategies(make_node()) == []

    def test_register_rejects_non_strategy(self):
        with pytest.raises(TypeError):
            ScoringEngine().register_strategy(object())

    def test_more_fields_score_higher(self, make_node):
        engine = ScoringEngine()
        bare = make_node(name="")
        rich = make_node(name="n", network="ws", tls={"enabled": True, "serverName": "a.com"})
        assert engine.score(rich) > engine.score(bare)

    def test_batch_score(self, make_node):
        engine = ScoringEngine()
        scored = engine.batch_score([make_node(), make_node(name="")])
        assert len(scored) == 2
        assert scored[0].score >= scored[1].score

    def test_get_stats(self):
        stats = ScoringEngine().get_stats()
        assert stats["total_strategies"] == 3
        assert set(stats["strategies_by_scope"]) == {"global", "vmess", "trojan"}

    def test_protocol_config_reaches_context(self, make_node):
        seen = {}

        class _Capture(ScoringStrategy):
            def calculate_score(self, node, context):
                seen.update(context)
                return 1

        engine = ScoringEngine(register_defaults=False)
        engine.register_strategy(_Capture("Capture"))
        engine.set_protocol_config(ProxyType.VMESS, {"prefer": "ws"})
        engine.calculate_score(make_node(), {"purpose": "deduplication"})
        assert seen["config"] == {"prefer": "ws"}
        assert seen["purpose"] == "deduplication"


class TestBasicCompleteness:
    def test_counts_fields(self, make_node):
        node = make_node(proxy_type=ProxyType.SS, name="n", password="pw", cipher="aes-128-gcm")
        assert basic_completeness(node) == 65

    def test_empty_node(self, make_node):
        node = make_node(name="", server="", port=0, proxy_type=ProxyType.SS)
        # type is always present
        assert basic_completeness(node) == 10
