"""重名节点编号 — 格式: 名称{连接符}{编号} 或 {编号}{连接符}名称。

只按原始显示名分组，不涉及身份键；所有节点都保留。
编号宽度按最大重复次数的位数补齐，例如最多 12 个重名时为 01..12。
"""

from __future__ import annotations

import logging
from dataclasses import replace

from proxydedup.models import Node

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "0 1 2 3 4 5 6 7 8 9"

POSITIONS = ("front", "back")


def parse_template(template: str) -> list[str]:
    """编号模板 → 0~9 对应的字符列表。

    支持空格分隔 ("0 1 2 ...") 与连续字符 ("0123456789") 两种写法。
    """
    if not template:
        return list("0123456789")
    if any(ch.isspace() for ch in template.strip()):
        return template.split()
    return list(template)


def generate_number(num: int, digits: list[str], width: int) -> str:
    """把十进制编号逐位映射到模板字符，并用模板的 0 左侧补齐。

    模板的每一位可以是多个字符 (如 keycap emoji)，宽度按十进制位数计算。
    """
    text = str(num)
    mapped = ""
    for ch in text:
        index = int(ch)
        mapped += digits[index] if index < len(digits) else ch
    pad = digits[0] if digits else "0"
    return pad * max(0, width - len(text)) + mapped


def rename_duplicates(
    nodes: list[Node],
    template: str = DEFAULT_TEMPLATE,
    link: str = "-",
    position: str = "back",
) -> list[Node]:
    """给重名节点追加序号，返回新列表；原节点对象不被修改。"""
    if position not in POSITIONS:
        raise ValueError(f"position 只能是 front 或 back: {position!r}")

    digits = parse_template(template)
    name_count: dict[str, int] = {}
    for node in nodes:
        name_count[node.name] = name_count.get(node.name, 0) + 1
    width = max((len(str(c)) for c in name_count.values()), default=0)

    increment: dict[str, int] = {}
    result: list[Node] = []
    for node in nodes:
        if name_count[node.name] <= 1:
            result.append(node)
            continue
        increment[node.name] = increment.get(node.name, 0) + 1
        num = generate_number(increment[node.name], digits, width)
        if position == "front":
            new_name = f"{num}{link}{node.name}"
        else:
            new_name = f"{node.name}{link}{num}"
        result.append(replace(node, name=new_name, params=dict(node.params)))

    renamed = sum(1 for c in name_count.values() if c > 1)
    if renamed:
        logger.debug("重名分组 %d 个，编号宽度 %d", renamed, width)
    return result
