"""把去重后的节点输出为 Clash YAML (proxies 列表)。"""

from __future__ import annotations

import logging
from typing import Any

import yaml

from proxydedup.models import Node

logger = logging.getLogger(__name__)


def generate_clash_yaml(nodes: list[Node]) -> str:
    """节点列表 → Clash YAML，字段与读入时保持一致，只有 name 可能被改写。"""
    proxies: list[dict[str, Any]] = [node.to_dict() for node in nodes]
    if not proxies:
        logger.warning("没有节点，生成空配置")

    return yaml.dump(
        {"proxies": proxies}, allow_unicode=True, default_flow_style=False, sort_keys=False
    )
