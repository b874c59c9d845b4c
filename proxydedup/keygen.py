"""节点身份键生成 — 按协议挑出决定连接身份的字段，拼成确定性的字符串键。

两个节点键相同 ⇔ 视为同一个端点。显示名、带宽提示 (up/down) 等
不影响连接的字段一律不参与。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Union

from proxydedup.models import Node, ProxyType
from proxydedup.normalizer import (
    FieldType,
    canonical_json,
    find_alias,
    get_field,
    normalize_bool,
    normalize_node_fields,
    normalize_value,
)

logger = logging.getLogger(__name__)

DELIMITER = ":"

Part = Union[str, int, float]

# 与 Clash 内部命名对齐的 SS 插件名
_SS_PLUGIN_MAP = {
    "obfs-local": "obfs",
    "simple-obfs": "obfs",
}

# SNI 类字段 (不含 host)，区分模式下与 host 分开处理
_SNI_FIELDS = ("sni", "serverName", "servername", "server_name")


# ---------------------------------------------------------------------------
# 取值工具
# ---------------------------------------------------------------------------

def _first(rec: Mapping[str, Any], *keys: str) -> Any:
    """按顺序返回第一个非 None 的字段值。"""
    for key in keys:
        value = rec.get(key)
        if value is not None:
            return value
    return None


def _s(rec: Mapping[str, Any], *keys: str, default: str = "") -> str:
    return normalize_value(_first(rec, *keys), FieldType.STRING, default)


def _secret(rec: Mapping[str, Any], *keys: str) -> str:
    return normalize_value(_first(rec, *keys), FieldType.SECRET)


def _auth(rec: Mapping[str, Any]) -> str:
    return get_field(rec, "auth", field_type=FieldType.SECRET)


def _obj(rec: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = rec.get(key)
    return value if isinstance(value, Mapping) else {}


def _join_list(value: Any, field_type: FieldType = FieldType.STRING, sort: bool = False) -> str:
    """列表字段 (alpn / allowedIPs / reserved) → 逗号拼接字符串。"""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        items = [normalize_value(v, field_type) for v in value if v is not None]
    else:
        items = [normalize_value(v, field_type) for v in str(value).split(",")]
    items = [str(v) for v in items if v != ""]
    if sort:
        items.sort()
    return ",".join(items)


def _escape(part: Part) -> str:
    text = part if isinstance(part, str) else str(part)
    return text.replace("%", "%25").replace(DELIMITER, "%3A")


# ---------------------------------------------------------------------------
# 公共子块: 传输层 / TLS
# ---------------------------------------------------------------------------

def _network(rec: Mapping[str, Any]) -> tuple[str, bool]:
    """返回 (传输类型, 是否显式指定)。"""
    if find_alias(rec, "transport") is not None:
        return get_field(rec, "transport", "tcp"), True
    transport_type = _obj(rec, "transport").get("type")
    if transport_type is not None:
        return normalize_value(transport_type, FieldType.STRING, "tcp"), True
    return "tcp", False


def _network_marker(explicit: bool) -> str:
    return "explicit_network" if explicit else "default_network"


def _headers(rec: Mapping[str, Any]) -> dict[str, str]:
    transport = _obj(rec, "transport")
    raw = (
        _first(rec, "headers", "wsHeaders")
        or transport.get("headers")
        or _obj(rec, "wsOpts").get("headers")
        or _obj(rec, "wsSettings").get("headers")
        or {}
    )
    if not isinstance(raw, Mapping):
        return {}
    return {
        normalize_value(k, FieldType.STRING): normalize_value(v, FieldType.STRING)
        for k, v in raw.items()
        if v is not None
    }


def _transport_parts(rec: Mapping[str, Any], network: str) -> list[Part]:
    """按传输类型展开路径/Host/服务名等会改变线上字节的字段。"""
    transport = _obj(rec, "transport")
    ws_opts = _obj(rec, "wsOpts") or _obj(rec, "wsSettings")
    grpc_opts = _obj(rec, "grpcOpts") or _obj(rec, "grpcSettings")
    h2_opts = _obj(rec, "h2Opts")

    if network in ("ws", "websocket", "httpupgrade"):
        headers = _headers(rec)
        host = _first(rec, "host") or transport.get("host") or headers.get("host")
        headers.pop("host", None)
        parts: list[Part] = [
            normalize_value(_first(rec, "path", "wsPath") or transport.get("path") or ws_opts.get("path"), FieldType.PATH),
            normalize_value(host, FieldType.DOMAIN),
        ]
        if headers:
            parts.append(canonical_json(headers))
        return parts

    if network in ("h2", "http"):
        host = _first(rec, "host") or transport.get("host") or h2_opts.get("host")
        return [
            normalize_value(_first(rec, "path") or transport.get("path") or h2_opts.get("path"), FieldType.PATH),
            _join_list(host, FieldType.DOMAIN, sort=True),
            normalize_value(transport.get("method"), FieldType.STRING, "GET"),
        ]

    if network == "grpc":
        service = (
            _first(rec, "serviceName", "grpcServiceName")
            or transport.get("serviceName")
            or grpc_opts.get("grpcServiceName")
            or grpc_opts.get("serviceName")
        )
        multi = _first(rec, "multiMode") or grpc_opts.get("multiMode")
        mode = _first(rec, "mode") or transport.get("mode")
        is_multi = normalize_bool(multi) if multi is not None else normalize_value(mode) == "multi"
        return [
            normalize_value(service, FieldType.STRING),
            normalize_value(_first(rec, "authority") or transport.get("authority"), FieldType.DOMAIN),
            "multi" if is_multi else "single",
        ]

    if network == "quic":
        header = _obj(rec, "header") or _obj(transport, "header")
        return [
            normalize_value(_first(rec, "quicSecurity") or transport.get("security"), FieldType.STRING, "none"),
            normalize_value(_first(rec, "key") or transport.get("key"), FieldType.SECRET),
            normalize_value(header.get("type") or rec.get("headerType"), FieldType.STRING, "none"),
        ]

    if network == "tcp":
        header = _obj(rec, "header") or _obj(transport, "header")
        header_type = normalize_value(header.get("type") or rec.get("headerType"), FieldType.STRING, "none")
        return [header_type] if header_type != "none" else []

    # kcp 等少见传输: 保留整个 transport 对象
    return [canonical_json(transport)] if transport else []


def _flat_server_name(rec: Mapping[str, Any]) -> str:
    return normalize_value(_first(rec, *_SNI_FIELDS), FieldType.DOMAIN)


def _tls_parts(rec: Mapping[str, Any]) -> list[Part]:
    """TLS 子块: 区分布尔形式与对象形式。"""
    tls = rec.get("tls")
    if isinstance(tls, Mapping):
        parts: list[Part] = [
            "tls_obj_true" if normalize_bool(tls.get("enabled", True)) else "tls_obj_false",
            normalize_value(_first(tls, "serverName", "sni") or _first(rec, *_SNI_FIELDS), FieldType.DOMAIN),
        ]
        insecure = _first(tls, "allowInsecure", "skipCertVerify", "insecure")
        if insecure is not None:
            parts.append("insecure" if normalize_bool(insecure) else "secure")
        if isinstance(tls.get("alpn"), (list, tuple)):
            parts.append(_join_list(tls["alpn"]))
        return parts
    if tls is not None and normalize_bool(tls):
        return ["tls_bool_true", _flat_server_name(rec)]
    return []


def _reality(rec: Mapping[str, Any]) -> Mapping[str, Any]:
    reality = _obj(rec, "reality") or _obj(_obj(rec, "tls"), "reality")
    if reality and not normalize_bool(reality.get("enabled", True)):
        return {}
    return reality


# ---------------------------------------------------------------------------
# 各协议身份字段
# ---------------------------------------------------------------------------

def _ss(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    plugin = _s(rec, "plugin", default="none")
    opts = rec.get("pluginOpts")
    if isinstance(opts, str):
        opts_part = ";".join(sorted(p.strip().lower() for p in opts.split(";") if p.strip()))
    else:
        opts_part = canonical_json(opts) if opts else ""
    return [
        _auth(rec),
        get_field(rec, "encryption"),
        _SS_PLUGIN_MAP.get(plugin, plugin),
        opts_part,
    ]


def _ssr(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    return [
        _auth(rec),
        get_field(rec, "encryption"),
        _s(rec, "protocol", default="origin"),
        _s(rec, "obfs", default="plain"),
        _s(rec, "protocolParam"),
        _s(rec, "obfsParam"),
    ]


def _vmess(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    network, explicit = _network(rec)
    parts: list[Part] = [
        _s(rec, "uuid", "id"),
        normalize_value(_first(rec, "alterId", "aid"), FieldType.NUMBER),
        _s(rec, "cipher", "security", default="auto"),
        network,
        _network_marker(explicit),
    ]
    parts.extend(_transport_parts(rec, network))
    parts.extend(_tls_parts(rec))
    return parts


def _vless(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    network, explicit = _network(rec)
    parts: list[Part] = [_s(rec, "uuid", "id")]
    if rec.get("flow") is not None:
        parts += [_s(rec, "flow", default="none"), "explicit_flow"]
    else:
        parts += ["none", "default_flow"]
    parts += [
        _s(rec, "encryption", default="none"),
        network,
        _network_marker(explicit),
    ]
    parts.extend(_transport_parts(rec, network))

    reality = _reality(rec)
    if reality:
        parts += [
            "reality",
            normalize_value(reality.get("publicKey"), FieldType.SECRET),
            _s(reality, "shortId"),
            _flat_server_name(rec) or normalize_value(_obj(rec, "tls").get("serverName"), FieldType.DOMAIN),
        ]
        if reality.get("spiderX"):
            parts.append(normalize_value(reality["spiderX"], FieldType.STRING))
        fingerprint = reality.get("fingerprint") or rec.get("fingerprint")
        if fingerprint:
            parts.append(normalize_value(fingerprint, FieldType.STRING))
    else:
        parts.extend(_tls_parts(rec))
    return parts


def _trojan(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    network, explicit = _network(rec)
    parts: list[Part] = [_auth(rec), network]

    if gen.unify_server_name:
        parts.append(get_field(rec, "server_name", field_type=FieldType.DOMAIN))
    elif _first(rec, *_SNI_FIELDS) is not None:
        parts += [_flat_server_name(rec), "sni_field"]
    elif rec.get("host") is not None:
        parts += [normalize_value(rec["host"], FieldType.DOMAIN), "host_field"]
    else:
        parts += ["", "no_sni_host"]

    parts.append(_network_marker(explicit))
    if network != "tcp":
        parts.extend(_transport_parts(rec, network))
    return parts


def _hysteria(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = [
        _auth(rec),
        _s(rec, "protocol", default="udp"),
        _s(rec, "obfs", default="none"),
        get_field(rec, "server_name", field_type=FieldType.DOMAIN),
    ]
    ports = _first(rec, "ports", "mport")
    if ports is not None:
        parts.append(normalize_value(ports, FieldType.STRING))
    return parts


def _hysteria2(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = [
        _auth(rec),
        get_field(rec, "server_name", field_type=FieldType.DOMAIN),
    ]
    obfs = rec.get("obfs")
    if isinstance(obfs, Mapping):
        parts.append(_s(obfs, "type", default="none"))
        if obfs.get("password"):
            parts.append(_secret(obfs, "password"))
    elif obfs:
        parts.append(normalize_value(obfs, FieldType.STRING))
        if rec.get("obfsPassword"):
            parts.append(_secret(rec, "obfsPassword"))
    else:
        parts.append("none")
    ports = _first(rec, "ports", "mport")
    if ports is not None:
        parts.append(normalize_value(ports, FieldType.STRING))
    return parts


def _tuic(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    return [
        _s(rec, "uuid", "id"),
        _auth(rec),
        normalize_value(rec.get("version"), FieldType.NUMBER, 5),
        _s(rec, "congestion", default="cubic"),
        _s(rec, "udpRelayMode", default="native"),
        get_field(rec, "server_name", field_type=FieldType.DOMAIN),
    ]


def _snell(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    obfs_opts = _obj(rec, "obfsOpts")
    obfs = normalize_value(
        rec.get("obfs") if not isinstance(rec.get("obfs"), Mapping) else None,
        FieldType.STRING,
        obfs_opts.get("mode") or "none",
    )
    parts: list[Part] = [
        _auth(rec),
        _s(rec, "version", default="1"),
        obfs,
    ]
    if obfs != "none":
        parts.append(normalize_value(rec.get("obfsHost") or obfs_opts.get("host"), FieldType.DOMAIN))
    return parts


def _anytls(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = [
        _auth(rec),
        get_field(rec, "server_name", field_type=FieldType.DOMAIN),
        _s(rec, "method", default="none"),
    ]
    if isinstance(rec.get("alpn"), (list, tuple)):
        parts.append(_join_list(rec["alpn"]))
    return parts


def _wireguard(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = [
        _secret(rec, "privateKey"),
        _secret(rec, "publicKey"),
        _secret(rec, "preSharedKey"),
        _s(rec, "endpoint"),
        _join_list(rec.get("allowedIPs"), sort=True),
        _join_list(rec.get("reserved")),
    ]
    if rec.get("persistentKeepalive") is not None:
        parts.append(normalize_value(rec["persistentKeepalive"], FieldType.NUMBER))
    if rec.get("mtu") is not None:
        parts.append(normalize_value(rec["mtu"], FieldType.NUMBER))
    return parts


def _ssh(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    return [
        _secret(rec, "username", "user"),
        _auth(rec),
        _secret(rec, "privateKey"),
        _secret(rec, "publicKey"),
        _join_list(rec.get("hostKeyAlgorithms")),
        _join_list(rec.get("kexAlgorithms")),
    ]


def _http(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = [
        _secret(rec, "username", "user"),
        _auth(rec),
        "https" if normalize_bool(rec.get("tls", False)) else "http",
    ]
    if isinstance(rec.get("headers"), Mapping) and rec["headers"]:
        parts.append(canonical_json(rec["headers"]))
    return parts


def _socks5(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    return [
        _secret(rec, "username", "user"),
        _auth(rec),
        "socks5-tls" if normalize_bool(rec.get("tls", False)) else "socks5",
        _s(rec, "version", default="5"),
    ]


def _direct(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    parts: list[Part] = ["direct"]
    interface = _first(rec, "interface", "interface-name")
    if interface:
        parts.append(normalize_value(interface, FieldType.STRING))
    return parts


def _generic(rec: Mapping[str, Any], gen: "KeyGenerator") -> list[Part]:
    """未知协议: 只用认证、加密、传输三类字段。"""
    secret = _auth(rec) or _s(rec, "uuid", "id")
    return [
        secret,
        get_field(rec, "encryption"),
        _network(rec)[0],
    ]


ProtocolBlock = Callable[[Mapping[str, Any], "KeyGenerator"], list]

_PROTOCOL_BLOCKS: dict[ProxyType, ProtocolBlock] = {
    ProxyType.SS: _ss,
    ProxyType.SSR: _ssr,
    ProxyType.VMESS: _vmess,
    ProxyType.VLESS: _vless,
    ProxyType.TROJAN: _trojan,
    ProxyType.HYSTERIA: _hysteria,
    ProxyType.HYSTERIA2: _hysteria2,
    ProxyType.TUIC: _tuic,
    ProxyType.SNELL: _snell,
    ProxyType.ANYTLS: _anytls,
    ProxyType.WIREGUARD: _wireguard,
    ProxyType.SSH: _ssh,
    ProxyType.HTTP: _http,
    ProxyType.SOCKS5: _socks5,
    ProxyType.DIRECT: _direct,
    ProxyType.GENERIC: _generic,
}

_missing = set(ProxyType) - set(_PROTOCOL_BLOCKS)
if _missing:
    raise RuntimeError(f"协议缺少身份字段定义: {sorted(m.value for m in _missing)}")


# ---------------------------------------------------------------------------
# 对外接口
# ---------------------------------------------------------------------------

class KeyGenerator:
    """节点 → 规范身份键。

    unify_server_name=True 时 Trojan 的 sni 与 host 按别名表合并为同一个
    服务器名字段；默认两者作为不同信号分开计入。
    """

    def __init__(self, unify_server_name: bool = False) -> None:
        self.unify_server_name = unify_server_name

    def generate_key(self, node: Union[Node, Mapping[str, Any], None]) -> str:
        if node is None:
            return ""
        if not isinstance(node, Node):
            node = Node.from_dict(node)

        rec = normalize_node_fields(node.params)
        parts: list[Part] = [
            normalize_value(node.server, FieldType.DOMAIN),
            normalize_value(node.port, FieldType.NUMBER),
            normalize_value(node.protocol_tag, FieldType.STRING),
        ]

        block = _PROTOCOL_BLOCKS[node.proxy_type]
        try:
            parts.extend(block(rec, self))
        except Exception as e:
            logger.debug("协议字段提取失败，使用通用字段: %s — %s", node.name, e)
            parts.extend(_generic(rec, self))

        return DELIMITER.join(_escape(p) for p in parts)

    __call__ = generate_key


_default_generator = KeyGenerator()


def generate_key(node: Union[Node, Mapping[str, Any], None], generator: Optional[KeyGenerator] = None) -> str:
    """用默认 (sni/host 分开) 配置生成身份键。"""
    return (generator or _default_generator).generate_key(node)
