"""节点记录读取 — 从本地文件或订阅 URL 取得已解析的节点记录。

支持的内容:
  - Clash YAML (顶层 proxies 列表)
  - JSON 列表，或带 proxies 列表的 JSON 对象
字段名保持原样，不在这里做归一。
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiohttp
import yaml

from proxydedup.models import Node

logger = logging.getLogger(__name__)


def is_clash_yaml(content: str) -> bool:
    """检测内容是否为 Clash YAML 格式。"""
    try:
        data = yaml.safe_load(content)
        return isinstance(data, dict) and "proxies" in data
    except Exception:
        return False


def is_json_records(content: str) -> bool:
    """检测内容是否为 JSON 节点列表。"""
    try:
        data = json.loads(content)
    except ValueError:
        return False
    return isinstance(data, list) or (isinstance(data, dict) and "proxies" in data)


def parse_records(records: Any) -> list[Node]:
    """把字典记录列表转为 Node，跳过无法识别的项。"""
    if not isinstance(records, list):
        return []

    nodes: list[Node] = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning("跳过非字典节点记录: %s", type(record).__name__)
            continue
        try:
            nodes.append(Node.from_dict(record))
        except Exception as e:
            logger.warning("节点记录转换失败: %s — %s", record.get("name", "?"), e)
    return nodes


def parse_clash_yaml(content: str) -> list[Node]:
    data = yaml.safe_load(content)
    return parse_records(data.get("proxies", []))


def parse_json_records(content: str) -> list[Node]:
    data = json.loads(content)
    if isinstance(data, dict):
        data = data.get("proxies", [])
    return parse_records(data)


def parse_content(content: str) -> list[Node]:
    """自动检测格式并解析为节点列表。"""
    if not content or not content.strip():
        return []

    # JSON 也是合法 YAML，先判断 JSON
    if is_json_records(content):
        logger.info("检测到 JSON 节点列表")
        return parse_json_records(content)

    if is_clash_yaml(content):
        logger.info("检测到 Clash YAML 格式")
        return parse_clash_yaml(content)

    logger.warning("无法识别的内容格式 (%d 字节)", len(content))
    return []


def parse_source_line(line: str) -> tuple[str, str]:
    """解析来源行，支持 name|location 和纯 location 格式。返回 (name, location)。"""
    line = line.strip()
    if "|" in line:
        name, location = line.split("|", 1)
        return name.strip(), location.strip()
    return "", line


async def load_source(location: str, timeout: int = 30) -> list[Node]:
    """读取单个来源 (http(s) URL 或本地路径)。失败返回空列表。"""
    if location.startswith(("http://", "https://")):
        content = await _fetch(location, timeout)
    else:
        content = _read_file(location)
    if not content:
        return []
    try:
        return parse_content(content)
    except Exception as e:
        logger.error("解析来源失败: %s — %s", location, e)
        return []


async def load_sources(locations: list[str], timeout: int = 30) -> list[list[Node]]:
    """并发读取所有来源，结果顺序与输入一致。"""
    return list(await asyncio.gather(*(load_source(loc, timeout) for loc in locations)))


def _read_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.error("读取文件失败: %s — %s", path, e)
        return ""


async def _fetch(url: str, timeout: int) -> str:
    """抓取 URL 内容，返回文本。"""
    try:
        ct = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=ct) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()
    except Exception as e:
        logger.error("抓取订阅失败: %s — %s", url, type(e).__name__)
        return ""
