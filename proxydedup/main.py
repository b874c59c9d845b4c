"""proxydedup 入口脚本。

从多个来源读取节点记录，合并后去重 (或对重名节点编号)，输出 Clash YAML。
DEDUP_SOURCES 格式 (每行一条，可选 name|location 格式指定别名):
    sub1|https://example.com/sub1.yaml
    ./local/nodes.json
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Mapping, Optional

from proxydedup.engine import DedupOptions, DeduplicationEngine
from proxydedup.intake import load_sources, parse_source_line
from proxydedup.keygen import KeyGenerator
from proxydedup.models import Node
from proxydedup.normalizer import normalize_bool
from proxydedup.output import generate_clash_yaml

logger = logging.getLogger("proxydedup")


def options_from_env(env: Mapping[str, str]) -> DedupOptions:
    """读取 DEDUP_* 环境变量构建去重选项。"""
    return DedupOptions(
        action=env.get("DEDUP_ACTION", "delete"),
        keep_first=normalize_bool(env.get("DEDUP_KEEP_FIRST", "true")),
        batch_size=int(env.get("DEDUP_BATCH_SIZE", "5000")),
        reconcile_scores=normalize_bool(env.get("DEDUP_RECONCILE", "false")),
        template=env.get("DEDUP_TEMPLATE", "0 1 2 3 4 5 6 7 8 9"),
        link=env.get("DEDUP_LINK", "-"),
        position=env.get("DEDUP_POSITION", "back"),
    )


def run_engine(
    engine: DeduplicationEngine,
    nodes: list[Node],
    options: DedupOptions,
    by_type: bool = False,
) -> list[Node]:
    """按配置选择去重方式。"""
    if by_type:
        return engine.deduplicate_by_type(nodes, options)
    return engine.batch_deduplicate(nodes, options)


async def process_sources(
    sources: list[tuple[str, str]],
    options: DedupOptions,
    engine: Optional[DeduplicationEngine] = None,
    by_type: bool = False,
) -> list[Node]:
    """读取全部来源 → 按来源顺序合并 → 去重。"""
    engine = engine or DeduplicationEngine()
    results = await load_sources([location for _, location in sources])

    merged: list[Node] = []
    for (name, _), nodes in zip(sources, results):
        if not nodes:
            logger.warning("[%s] 未读取到节点，跳过", name)
            continue
        logger.info("[%s] 读取 %d 个节点", name, len(nodes))
        merged.extend(nodes)

    if not merged:
        return []

    result = run_engine(engine, merged, options, by_type)
    stats = engine.get_stats()
    logger.info(
        "去重完成: %d → %d (重复 %d, 删除 %d, 耗时 %.1fms)",
        stats.total_processed, len(result),
        stats.duplicates_found, stats.duplicates_removed, stats.processing_time_ms,
    )
    return result


async def run() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # ---- 读取环境变量 ----
    sources_raw = os.environ.get("DEDUP_SOURCES", "")
    if not sources_raw.strip():
        logger.error("DEDUP_SOURCES 环境变量为空")
        sys.exit(1)

    try:
        options = options_from_env(os.environ)
    except ValueError as e:
        logger.error("去重选项无效: %s", e)
        sys.exit(1)

    output_path = os.environ.get("DEDUP_OUTPUT", "")
    by_type = normalize_bool(os.environ.get("DEDUP_BY_TYPE", "false"))
    unify_sni = normalize_bool(os.environ.get("DEDUP_UNIFY_SNI", "false"))

    # ---- 解析来源列表 ----
    lines = [l.strip() for l in sources_raw.strip().splitlines() if l.strip()]
    sources: list[tuple[str, str]] = []
    for i, line in enumerate(lines):
        name, location = parse_source_line(line)
        sources.append((name or f"source{i + 1}", location))

    logger.info("共 %d 个来源: %s", len(sources), ", ".join(n for n, _ in sources))

    engine = DeduplicationEngine(key_generator=KeyGenerator(unify_server_name=unify_sni))
    nodes = await process_sources(sources, options, engine, by_type)
    content = generate_clash_yaml(nodes)

    if not output_path:
        print(content)
    else:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(content)
        logger.info("已写入 %s (%d 个节点)", output_path, len(nodes))


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
