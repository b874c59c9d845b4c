from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ProxyType(Enum):
    SS = "ss"
    SSR = "ssr"
    VMESS = "vmess"
    VLESS = "vless"
    TROJAN = "trojan"
    HYSTERIA = "hysteria"
    HYSTERIA2 = "hysteria2"
    TUIC = "tuic"
    SNELL = "snell"
    ANYTLS = "anytls"
    WIREGUARD = "wireguard"
    SSH = "ssh"
    HTTP = "http"
    SOCKS5 = "socks5"
    DIRECT = "direct"
    # 未知协议统一走这里，不会丢掉认证/加密字段
    GENERIC = "generic"

    @classmethod
    def from_tag(cls, tag: Any) -> "ProxyType":
        """协议标签 → ProxyType，忽略大小写，未知标签返回 GENERIC。"""
        if tag is None:
            return cls.GENERIC
        text = str(tag).strip().lower()
        text = _TAG_ALIASES.get(text, text)
        for member in cls:
            if member.value == text and member is not cls.GENERIC:
                return member
        return cls.GENERIC


_TAG_ALIASES: dict[str, str] = {
    "shadowsocks": "ss",
    "shadowsocksr": "ssr",
    "hy2": "hysteria2",
    "hy": "hysteria",
    "socks": "socks5",
    "socks5h": "socks5",
    "https": "http",
    "wg": "wireguard",
}

# 从解析器记录中单独提取的公共字段，其余全部进入 params
_COMMON_KEYS = ("name", "type", "server", "port")


@dataclass
class Node:
    """统一的节点记录，去重引擎的输入和输出。

    params 保留上游解析器给出的原始字段名 (未做别名归一)，
    字段归一是去重引擎自己的工作。
    """

    name: str
    proxy_type: ProxyType
    server: Any
    port: Any

    # --- 协议相关的原始字段 ---
    params: dict[str, Any] = field(default_factory=dict)

    # --- 原始协议标签 (GENERIC 时用来区分不同的未知协议) ---
    type_name: str = ""

    def __post_init__(self) -> None:
        if not self.type_name:
            self.type_name = self.proxy_type.value

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "Node":
        """从解析器产生的字典记录构建 Node，不修改原字典。"""
        raw_type = record.get("type")
        params = {k: v for k, v in record.items() if k not in _COMMON_KEYS}
        return cls(
            name=record.get("name") or "",
            proxy_type=ProxyType.from_tag(raw_type),
            server=record.get("server"),
            port=record.get("port"),
            params=params,
            type_name=str(raw_type).strip() if raw_type is not None else "",
        )

    def to_dict(self) -> dict[str, Any]:
        """还原为与输入同形状的字典记录。"""
        record: dict[str, Any] = {
            "name": self.name,
            "type": self.type_name,
            "server": self.server,
            "port": self.port,
        }
        record.update(self.params)
        return record

    @property
    def protocol_tag(self) -> str:
        """已知协议用规范值，未知协议保留原始标签。"""
        if self.proxy_type is ProxyType.GENERIC:
            return (self.type_name or ProxyType.GENERIC.value).strip().lower()
        return self.proxy_type.value

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        value = self.params.get(key)
        return default if value is None else value

    def has(self, key: str) -> bool:
        """字段是否显式出现 (值为 None 视为缺失)。"""
        return self.params.get(key) is not None
