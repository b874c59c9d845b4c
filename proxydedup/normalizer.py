"""字段归一化 — 把不同来源的字段名与取值统一成一种规范形式。

同一个逻辑节点在不同订阅里常见的差异:
  - 字段名不同 (sni / servername / host, password / auth ...)
  - 类型不同 (port: 443 / "443", tls: true / "1")
  - 大小写与首尾空白不同
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


class FieldType(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DOMAIN = "domain"
    PATH = "path"
    # 密码/密钥: 原样比较，区分大小写，不去空白
    SECRET = "secret"


_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no", ""}

# 规范字段 → 别名，按声明顺序取第一个存在的
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "encryption": ("method", "cipher", "encryption"),
    "auth": ("password", "auth", "token"),
    "server_name": ("sni", "serverName", "server_name", "servername", "host"),
    "transport": ("network", "transport", "net"),
}

# 字段名归一 (Clash 短横线 / 下划线写法 → 驼峰)
FIELD_NAME_MAPPINGS: dict[str, str] = {
    # VMess
    "alter-id": "alterId",
    "alter_id": "alterId",
    # TLS
    "skip-cert-verify": "skipCertVerify",
    "skip_cert_verify": "skipCertVerify",
    "allow-insecure": "allowInsecure",
    "allow_insecure": "allowInsecure",
    "server_name": "serverName",
    # Hysteria2 / Snell
    "obfs-password": "obfsPassword",
    "obfs_password": "obfsPassword",
    "obfs-host": "obfsHost",
    "obfs_host": "obfsHost",
    "obfs-opts": "obfsOpts",
    # Snell (Clash / mihomo 用 psk 存密钥)
    "psk": "password",
    # Hysteria v1
    "auth-str": "auth",
    "auth_str": "auth",
    # SSR
    "protocol-param": "protocolParam",
    "protocol_param": "protocolParam",
    "obfs-param": "obfsParam",
    "obfs_param": "obfsParam",
    # SS
    "plugin-opts": "pluginOpts",
    "plugin_opts": "pluginOpts",
    # 传输层
    "grpc-service-name": "grpcServiceName",
    "grpc_service_name": "grpcServiceName",
    "service_name": "serviceName",
    "ws-path": "wsPath",
    "ws_path": "wsPath",
    "ws-headers": "wsHeaders",
    "ws_headers": "wsHeaders",
    "ws-opts": "wsOpts",
    "ws-opt": "wsOpts",
    "grpc-opts": "grpcOpts",
    "h2-opts": "h2Opts",
    # Reality
    "reality-opts": "reality",
    "public-key": "publicKey",
    "public_key": "publicKey",
    "short-id": "shortId",
    "short_id": "shortId",
    "spider-x": "spiderX",
    # WireGuard / SSH
    "private-key": "privateKey",
    "private_key": "privateKey",
    "pre-shared-key": "preSharedKey",
    "pre_shared_key": "preSharedKey",
    "allowed-ips": "allowedIPs",
    "allowed_ips": "allowedIPs",
    "persistent-keepalive": "persistentKeepalive",
    "persistent_keepalive": "persistentKeepalive",
    "host-key-algorithms": "hostKeyAlgorithms",
    "kex-algorithms": "kexAlgorithms",
    # TUIC
    "congestion-controller": "congestion",
    "congestion_control": "congestion",
    "udp-relay-mode": "udpRelayMode",
    "udp_relay_mode": "udpRelayMode",
    # TLS 指纹
    "client-fingerprint": "fingerprint",
}

# 包含嵌套配置、需要递归归一字段名的对象
_NESTED_OBJECTS = (
    "tls", "transport", "reality", "obfs", "obfsOpts",
    "wsOpts", "grpcOpts", "h2Opts", "wsSettings", "grpcSettings",
)


# ---------------------------------------------------------------------------
# 取值归一
# ---------------------------------------------------------------------------

def normalize_bool(value: Any) -> bool:
    """布尔值归一: 原生布尔、0/1 数字、true/yes/false/no 字符串。"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in _TRUE_STRINGS:
            return True
        if lower in _FALSE_STRINGS:
            return False
    return bool(value)


def normalize_number(value: Any, default: Any = 0) -> Any:
    """数字归一: 数字或数字字符串，其它返回 default。"""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN
            return default
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 10)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return default
        if parsed != parsed:
            return default
        return int(parsed) if parsed.is_integer() else parsed
    return default


def normalize_domain(value: Any) -> str:
    text = str(value).strip().lower()
    if text.endswith("."):
        text = text[:-1]
    return text.strip()


def normalize_path(value: Any) -> str:
    """路径归一: 保证单个前导 /，去掉末尾 / (根路径除外)。"""
    path = str(value).strip()
    if not path:
        return ""
    if not path.startswith("/"):
        path = "/" + path
    else:
        path = "/" + path.lstrip("/")
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path or "/"


def normalize_value(value: Any, field_type: FieldType = FieldType.STRING, default: Any = None) -> Any:
    """按语义类型归一单个字段值。value 为 None 时归一 default。"""
    if value is None:
        if default is None:
            if field_type is FieldType.NUMBER:
                return 0
            if field_type is FieldType.BOOLEAN:
                return False
            return ""
        return normalize_value(default, field_type)

    if field_type is FieldType.STRING:
        return str(value).strip().lower()
    if field_type is FieldType.NUMBER:
        return normalize_number(value, 0 if default is None else default)
    if field_type is FieldType.BOOLEAN:
        return normalize_bool(value)
    if field_type is FieldType.DOMAIN:
        return normalize_domain(value)
    if field_type is FieldType.PATH:
        return normalize_path(value)
    if field_type is FieldType.SECRET:
        return str(value)
    return str(value)


# ---------------------------------------------------------------------------
# 别名解析
# ---------------------------------------------------------------------------

def _lookup(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    getter = getattr(source, "get", None)
    return getter(key) if getter else None


def find_alias(source: Any, canonical: str) -> Optional[str]:
    """返回第一个存在 (非 None、非对象) 的别名字段名。"""
    for alias in FIELD_ALIASES.get(canonical, (canonical,)):
        value = _lookup(source, alias)
        if value is not None and not isinstance(value, (Mapping, list)):
            return alias
    return None


def get_field(
    source: Any,
    canonical: str,
    default: Any = None,
    field_type: FieldType = FieldType.STRING,
) -> Any:
    """按别名表读取字段并归一。source 可以是字典或 Node。"""
    alias = find_alias(source, canonical)
    if alias is None:
        return normalize_value(default, field_type)
    return normalize_value(_lookup(source, alias), field_type, default)


# ---------------------------------------------------------------------------
# 结构化字段的稳定序列化
# ---------------------------------------------------------------------------

def _sort_keys(item: Any) -> Any:
    if isinstance(item, Mapping):
        return {str(k): _sort_keys(item[k]) for k in sorted(item, key=str)}
    if isinstance(item, (list, tuple)):
        return [_sort_keys(v) for v in item]
    return item


def canonical_json(obj: Any) -> str:
    """递归排序所有键后序列化，同一逻辑结构总是得到同一字符串。"""
    if obj is None:
        return ""
    if isinstance(obj, str):
        return obj
    return json.dumps(_sort_keys(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# 节点字段名归一
# ---------------------------------------------------------------------------

def _rename_fields(obj: Mapping[str, Any]) -> dict[str, Any]:
    renamed = {k: v for k, v in obj.items() if k not in FIELD_NAME_MAPPINGS}
    # 规范名已显式存在时不被别名覆盖；多个别名按映射表顺序取第一个
    for alias, target in FIELD_NAME_MAPPINGS.items():
        if alias in obj and target not in renamed:
            renamed[target] = obj[alias]
    for key in _NESTED_OBJECTS:
        if isinstance(renamed.get(key), Mapping):
            renamed[key] = _rename_fields(renamed[key])
    return renamed


def normalize_node_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    """返回字段名归一后的新字典，原记录不被修改。"""
    normalized = _rename_fields(record)

    if "port" in normalized:
        normalized["port"] = normalize_number(normalized["port"])
    if "alterId" in normalized:
        normalized["alterId"] = normalize_number(normalized["alterId"])

    tls = normalized.get("tls")
    if isinstance(tls, Mapping):
        tls = dict(tls)
        for key in ("enabled", "skipCertVerify", "allowInsecure"):
            if tls.get(key) is not None:
                tls[key] = normalize_bool(tls[key])
        if tls.get("serverName") is not None:
            tls["serverName"] = str(tls["serverName"]).strip()
        normalized["tls"] = tls

    for key in ("skipCertVerify", "allowInsecure", "udp"):
        if normalized.get(key) is not None and not isinstance(normalized[key], Mapping):
            normalized[key] = normalize_bool(normalized[key])

    transport = normalized.get("transport")
    if isinstance(transport, Mapping):
        transport = dict(transport)
        if "grpcServiceName" in transport and "serviceName" not in transport:
            transport["serviceName"] = transport.pop("grpcServiceName")
        normalized["transport"] = transport

    return normalized
