"""节点完整度评分 — 只用于在同一重复组内挑选保留哪一个。

策略可插拔: 全局策略对所有节点生效，协议策略只对对应协议生效，
最终得分是所有适用策略的加权平均 (0~100)。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from proxydedup.models import Node, ProxyType
from proxydedup.normalizer import (
    FieldType,
    find_alias,
    get_field,
    normalize_bool,
    normalize_node_fields,
    normalize_value,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

Scope = Union[str, ProxyType]


def _filled(value: Any) -> bool:
    """字段是否非空 (空白字符串、0、None 视为空)。"""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return bool(str(value).strip())


def _field(node: Node, name: str) -> Any:
    if name == "server":
        return node.server
    if name == "port":
        return node.port
    if name == "type":
        return node.type_name
    if name == "name":
        return node.name
    return normalize_node_fields(node.params).get(name)


def _first(rec: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = rec.get(key)
        if value is not None:
            return value
    return None


def _network(rec: Mapping[str, Any]) -> str:
    """传输类型，取值规则与身份键相同。"""
    if find_alias(rec, "transport") is not None:
        return get_field(rec, "transport", "tcp")
    transport = rec.get("transport")
    if isinstance(transport, Mapping) and transport.get("type") is not None:
        return normalize_value(transport["type"], FieldType.STRING, "tcp")
    return "tcp"


def _transport_value(rec: Mapping[str, Any], key: str) -> Any:
    """依次在平铺字段、transport 与各 *Opts 对象中查找 path/host。"""
    value = _first(rec, key, "wsPath") if key == "path" else rec.get(key)
    if value:
        return value
    for name in ("transport", "wsOpts", "wsSettings", "h2Opts"):
        opts = rec.get(name)
        if not isinstance(opts, Mapping):
            continue
        if opts.get(key):
            return opts[key]
        headers = opts.get("headers")
        if key == "host" and isinstance(headers, Mapping):
            host = headers.get("Host") or headers.get("host")
            if host:
                return host
    return None


def _server_name(rec: Mapping[str, Any]) -> str:
    return get_field(rec, "server_name", field_type=FieldType.DOMAIN)


@dataclass
class ScoredNode:
    node: Node
    score: float


@dataclass
class ScoreResult:
    total_score: float = 0.0
    max_possible_score: float = 0.0
    strategy_results: list[dict[str, Any]] = field(default_factory=list)
    protocol_type: str = ""
    fallback_used: bool = False


# ---------------------------------------------------------------------------
# 策略
# ---------------------------------------------------------------------------

class ScoringStrategy:
    """评分策略基类，子类实现 calculate_score。"""

    def __init__(self, name: str, weight: float = 1.0) -> None:
        self.name = name
        self.weight = weight
        self.enabled = True

    def calculate_score(self, node: Node, context: dict[str, Any]) -> float:
        raise NotImplementedError(f"{type(self).__name__}.calculate_score")

    def is_applicable(self, node: Node) -> bool:
        return True

    @property
    def description(self) -> str:
        return f"{self.name} scoring strategy"


class CompletenessStrategy(ScoringStrategy):
    """必需字段占 60 分，可选元数据字段占 40 分。"""

    required_fields = ("server", "port", "type")
    optional_fields = ("name", "uuid", "password")

    def __init__(self, weight: float = 1.0) -> None:
        super().__init__("Completeness", weight)

    def calculate_score(self, node: Node, context: dict[str, Any]) -> float:
        score = 0.0
        for name in self.required_fields:
            if _filled(_field(node, name)):
                score += 60 / len(self.required_fields)
        for name in self.optional_fields:
            if _filled(_field(node, name)):
                score += 40 / len(self.optional_fields)
        return min(100.0, score)


class VMessStrategy(ScoringStrategy):
    CIPHER_RANKING = {
        "aes-128-gcm": 100,
        "chacha20-poly1305": 95,
        "aes-256-gcm": 90,
        "auto": 70,
        "none": 30,
    }
    NETWORK_RANKING = {
        "ws": 100,
        "h2": 95,
        "grpc": 90,
        "quic": 85,
        "tcp": 80,
        "kcp": 70,
    }

    def __init__(self, weight: float = 1.0) -> None:
        super().__init__("VMess", weight)

    def is_applicable(self, node: Node) -> bool:
        return node.proxy_type is ProxyType.VMESS

    def calculate_score(self, node: Node, context: dict[str, Any]) -> float:
        rec = normalize_node_fields(node.params)
        score = 0.0
        uuid = _first(rec, "uuid", "id")
        if isinstance(uuid, str) and _UUID_RE.match(uuid.strip()):
            score += 30
        score += self.cipher_score(_first(rec, "cipher", "security")) * 0.2
        score += self.network_score(rec) * 0.25
        score += self.tls_score(rec) * 0.25
        return min(100.0, score)

    def cipher_score(self, cipher: Any) -> int:
        return self.CIPHER_RANKING.get(str(cipher).strip().lower() if cipher else "", 50)

    def network_score(self, rec: Mapping[str, Any]) -> int:
        score = self.NETWORK_RANKING.get(_network(rec), 60)
        if _transport_value(rec, "path"):
            score += 10
        if _transport_value(rec, "host"):
            score += 10
        return min(100, score)

    def tls_score(self, rec: Mapping[str, Any]) -> int:
        tls = rec.get("tls")
        if isinstance(tls, Mapping):
            # 与身份键一致: 对象形式缺省 enabled 视为开启
            if not normalize_bool(tls.get("enabled", True)):
                return 30
            score = 70
            if _first(tls, "serverName", "sni") or _server_name(rec):
                score += 15
            if tls.get("alpn"):
                score += 10
            if tls.get("fingerprint") or rec.get("fingerprint"):
                score += 5
            return min(100, score)
        if tls is not None and normalize_bool(tls):
            score = 70
            if _server_name(rec):
                score += 15
            if rec.get("alpn"):
                score += 10
            if rec.get("fingerprint"):
                score += 5
            return min(100, score)
        return 30


class TrojanStrategy(ScoringStrategy):
    def __init__(self, weight: float = 1.0) -> None:
        super().__init__("Trojan", weight)

    def is_applicable(self, node: Node) -> bool:
        return node.proxy_type is ProxyType.TROJAN

    def calculate_score(self, node: Node, context: dict[str, Any]) -> float:
        rec = normalize_node_fields(node.params)
        score = self.password_score(get_field(rec, "auth", field_type=FieldType.SECRET)) * 0.4
        if _server_name(rec):
            score += 30
        score += self.network_score(rec) * 0.3
        return min(100.0, score)

    def password_score(self, password: Any) -> int:
        if not password:
            return 0
        password = str(password)
        score = 50
        if len(password) >= 16:
            score += 20
        if re.search(r"[A-Z]", password):
            score += 10
        if re.search(r"[a-z]", password):
            score += 10
        if re.search(r"[0-9]", password):
            score += 10
        return min(100, score)

    def network_score(self, rec: Mapping[str, Any]) -> int:
        network = _network(rec)
        if network == "ws":
            return 100
        return 80 if network == "tcp" else 60


# ---------------------------------------------------------------------------
# 引擎
# ---------------------------------------------------------------------------

def basic_completeness(node: Node) -> int:
    """备用评分: 统计非空的必需/可选字段，没有策略可用时使用。"""
    rec = normalize_node_fields(node.params)
    score = 0
    for name, points in (("server", 10), ("port", 10), ("type", 10), ("name", 5)):
        if _filled(_field(node, name)):
            score += points

    if node.proxy_type in (ProxyType.SS, ProxyType.SSR, ProxyType.TROJAN):
        if _filled(get_field(rec, "auth", field_type=FieldType.SECRET)):
            score += 20
        if _filled(get_field(rec, "encryption")):
            score += 10
    elif node.proxy_type in (ProxyType.VMESS, ProxyType.VLESS, ProxyType.TUIC):
        if _filled(_first(rec, "uuid", "id")):
            score += 20
        if _filled(_first(rec, "security", "cipher")):
            score += 5
    elif _filled(get_field(rec, "auth", field_type=FieldType.SECRET)):
        score += 20

    if find_alias(rec, "transport") is not None:
        score += 5
    tls = rec.get("tls")
    if isinstance(tls, Mapping):
        if normalize_bool(tls.get("enabled", True)):
            score += 5
    elif tls is not None and normalize_bool(tls):
        score += 5
    return min(100, score)


class ScoringEngine:
    """可配置评分引擎。每个实例独立持有策略表。"""

    max_score = 100.0
    min_score = 0.0

    def __init__(self, register_defaults: bool = True) -> None:
        self.strategies: dict[str, list[ScoringStrategy]] = {}
        self.protocol_configs: dict[str, dict[str, Any]] = {}
        if register_defaults:
            self.register_strategy(CompletenessStrategy(1.0))
            self.register_strategy(VMessStrategy(1.0), ProxyType.VMESS)
            self.register_strategy(TrojanStrategy(1.0), ProxyType.TROJAN)

    @staticmethod
    def _scope_key(scope: Scope) -> str:
        return scope.value if isinstance(scope, ProxyType) else str(scope)

    def register_strategy(self, strategy: ScoringStrategy, scope: Scope = GLOBAL_SCOPE) -> None:
        if not isinstance(strategy, ScoringStrategy):
            raise TypeError("strategy 必须继承 ScoringStrategy")
        self.strategies.setdefault(self._scope_key(scope), []).append(strategy)
        logger.debug("注册评分策略: %s (%s)", strategy.name, self._scope_key(scope))

    def set_protocol_config(self, scope: Scope, config: dict[str, Any]) -> None:
        key = self._scope_key(scope)
        self.protocol_configs[key] = {**self.protocol_configs.get(key, {}), **config}

    def applicable_strategies(self, node: Node) -> list[ScoringStrategy]:
        protocol = node.proxy_type.value
        candidates = self.strategies.get(GLOBAL_SCOPE, []) + self.strategies.get(protocol, [])
        return [s for s in candidates if s.enabled and s.is_applicable(node)]

    def calculate_score(self, node: Node, context: Optional[dict[str, Any]] = None) -> ScoreResult:
        protocol = node.proxy_type.value
        ctx = {"protocol_type": protocol, "config": self.protocol_configs.get(protocol, {})}
        ctx.update(context or {})
        result = ScoreResult(protocol_type=protocol)

        strategies = self.applicable_strategies(node)
        if not strategies:
            logger.warning("没有适用于 %s 的评分策略", protocol)
            result.fallback_used = True
            return result

        total_weight = 0.0
        weighted = 0.0
        for strategy in strategies:
            try:
                score = float(strategy.calculate_score(node, ctx))
            except Exception as e:
                logger.error("评分策略 %s 执行失败: %s", strategy.name, e)
                continue
            weighted += score * strategy.weight
            total_weight += strategy.weight
            result.strategy_results.append({
                "strategy": strategy.name,
                "score": round(score, 2),
                "weight": strategy.weight,
                "weighted_score": round(score * strategy.weight, 2),
            })

        if total_weight > 0:
            result.total_score = round(weighted / total_weight, 2)
            result.max_possible_score = self.max_score
        else:
            result.fallback_used = True

        result.total_score = max(self.min_score, min(self.max_score, result.total_score))
        return result

    def score(self, node: Node, context: Optional[dict[str, Any]] = None) -> float:
        """节点最终得分；无策略可用时退回 basic_completeness。"""
        result = self.calculate_score(node, context)
        if result.fallback_used:
            return float(basic_completeness(node))
        return result.total_score

    def batch_score(self, nodes: list[Node], context: Optional[dict[str, Any]] = None) -> list[ScoredNode]:
        return [ScoredNode(node=n, score=self.score(n, context)) for n in nodes]

    def get_stats(self) -> dict[str, Any]:
        by_scope = {
            scope: {
                "count": len(items),
                "enabled": sum(1 for s in items if s.enabled),
                "strategies": [{"name": s.name, "weight": s.weight, "enabled": s.enabled} for s in items],
            }
            for scope, items in self.strategies.items()
        }
        return {
            "total_strategies": sum(len(items) for items in self.strategies.values()),
            "strategies_by_scope": by_scope,
        }
