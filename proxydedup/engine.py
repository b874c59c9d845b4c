"""去重引擎 — 组合字段归一、身份键和完整度评分。

两种处理方式:
  delete  按身份键去重，同组内保留完整度最高的一个
  rename  不删节点，只给重名节点追加序号
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Hashable, Mapping, Optional, Sequence, Union

from proxydedup.keygen import KeyGenerator
from proxydedup.models import Node
from proxydedup.renamer import DEFAULT_TEMPLATE, POSITIONS, rename_duplicates
from proxydedup.scoring import ScoringEngine, basic_completeness

logger = logging.getLogger(__name__)

STRATEGY_FULL = "full"


class DuplicateAction(Enum):
    DELETE = "delete"
    RENAME = "rename"


# camelCase 选项名 → 字段名
_OPTION_ALIASES = {
    "keepFirst": "keep_first",
    "caseSensitive": "case_sensitive",
    "batchSize": "batch_size",
    "reconcileScores": "reconcile_scores",
}


@dataclass
class DedupOptions:
    strategy: str = STRATEGY_FULL
    action: DuplicateAction = DuplicateAction.DELETE
    keep_first: bool = True
    # 预留，目前总是按不区分大小写处理
    case_sensitive: bool = False
    template: str = DEFAULT_TEMPLATE
    link: str = "-"
    position: str = "back"
    batch_size: int = 5000
    # 分块去重时跨块比较完整度 (与整体 deduplicate 结果一致)
    reconcile_scores: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.action, DuplicateAction):
            self.action = DuplicateAction(str(self.action).strip().lower())
        if self.strategy != STRATEGY_FULL:
            raise ValueError(f"不支持的去重策略: {self.strategy!r}")
        if self.position not in POSITIONS:
            raise ValueError(f"position 只能是 front 或 back: {self.position!r}")
        if int(self.batch_size) <= 0:
            raise ValueError(f"batch_size 必须为正数: {self.batch_size!r}")
        self.batch_size = int(self.batch_size)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DedupOptions":
        """支持 snake_case 与 camelCase 两种选项名，忽略未知选项。"""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in mapping.items():
            name = _OPTION_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
            else:
                logger.debug("忽略未知去重选项: %s", key)
        return cls(**kwargs)


OptionsLike = Union[DedupOptions, Mapping[str, Any], None]


@dataclass
class DedupStats:
    total_processed: int = 0
    duplicates_found: int = 0
    duplicates_removed: int = 0
    processing_time_ms: float = 0.0


@dataclass
class DuplicateGroup:
    """共享同一身份键的节点，members 为 (节点, 原始下标)。"""

    key: str
    members: list[tuple[Node, int]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.members)


@dataclass
class DuplicateReport:
    duplicate_indexes: list[int] = field(default_factory=list)
    groups: list[DuplicateGroup] = field(default_factory=list)
    total_duplicates: int = 0
    unique_count: int = 0


@dataclass
class _Kept:
    index: int
    node: Node
    score: Optional[float] = None


def _resolve_options(options: OptionsLike) -> DedupOptions:
    if options is None:
        return DedupOptions()
    if isinstance(options, DedupOptions):
        return options
    if isinstance(options, Mapping):
        return DedupOptions.from_mapping(options)
    raise TypeError(f"options 类型不支持: {type(options).__name__}")


def _check_nodes(nodes: Any) -> list[tuple[int, Node]]:
    """校验输入并返回 (原始下标, 节点)；None 项被跳过。"""
    if nodes is None or isinstance(nodes, (str, bytes, Mapping)) or not isinstance(nodes, Sequence):
        raise TypeError(f"nodes 必须是节点列表，收到 {type(nodes).__name__}")
    items: list[tuple[int, Node]] = []
    for index, node in enumerate(nodes):
        if node is None:
            continue
        if not isinstance(node, Node):
            raise TypeError(f"第 {index} 项不是 Node: {type(node).__name__}")
        items.append((index, node))
    return items


class DeduplicationEngine:
    """去重引擎。统计计数属于实例本身，需要隔离统计时各自创建实例。"""

    def __init__(
        self,
        key_generator: Optional[KeyGenerator] = None,
        scoring_engine: Optional[ScoringEngine] = None,
    ) -> None:
        self.key_generator = key_generator or KeyGenerator()
        self.scoring_engine = scoring_engine or ScoringEngine()
        self.stats = DedupStats()

    # ------------------------------------------------------------------
    # 主入口
    # ------------------------------------------------------------------

    def deduplicate(self, nodes: Sequence[Node], options: OptionsLike = None) -> list[Node]:
        opts = _resolve_options(options)
        items = _check_nodes(nodes)
        start = time.perf_counter()

        if opts.action is DuplicateAction.RENAME:
            result, found = self._perform_renaming(items, opts)
        else:
            result, found = self._perform_deletion(items, opts)

        self._record(len(items), found, len(items) - len(result), start)
        return result

    def deduplicate_by_type(self, nodes: Sequence[Node], options: OptionsLike = None) -> list[Node]:
        """先按协议分组，再对每组单独去重，按协议首次出现顺序拼接。"""
        opts = _resolve_options(options)
        groups: dict[str, list[Node]] = {}
        for _, node in _check_nodes(nodes):
            groups.setdefault(node.protocol_tag, []).append(node)

        result: list[Node] = []
        for tag, group in groups.items():
            deduped = self.deduplicate(group, opts)
            logger.debug("[%s] %d → %d", tag, len(group), len(deduped))
            result.extend(deduped)
        return result

    def batch_deduplicate(self, nodes: Sequence[Node], options: OptionsLike = None) -> list[Node]:
        """分块去重，所有块共享一个全局已见键集合。

        默认先到先得，不做跨块完整度比较；reconcile_scores=True 时
        每个键保留目前最优的成员，跨块替换，结果与 deduplicate 相同。
        """
        opts = _resolve_options(options)
        items = _check_nodes(nodes)
        if len(items) <= opts.batch_size or opts.action is DuplicateAction.RENAME:
            return self.deduplicate(nodes, opts)

        start = time.perf_counter()
        size = opts.batch_size
        chunks = (items[i:i + size] for i in range(0, len(items), size))

        if opts.reconcile_scores:
            kept: dict[str, _Kept] = {}
            found = 0
            for chunk in chunks:
                for index, node in chunk:
                    if self._consider(kept, index, node, opts):
                        found += 1
            result = [k.node for k in sorted(kept.values(), key=lambda k: k.index)]
        else:
            seen: set[str] = set()
            result = []
            found = 0
            for chunk in chunks:
                for _, node in chunk:
                    key = self.key_generator.generate_key(node)
                    if key in seen:
                        found += 1
                        continue
                    seen.add(key)
                    result.append(node)

        self._record(len(items), found, len(items) - len(result), start)
        logger.debug("分块去重: 块大小 %d, %d → %d", size, len(items), len(result))
        return result

    def custom_deduplicate(
        self,
        nodes: Sequence[Node],
        key_func: Callable[[Node], Hashable],
        keep_first: bool = True,
    ) -> list[Node]:
        """使用调用方提供的键函数去重。

        键函数对某个节点抛异常时，该节点按唯一节点保留。
        keep_first=False 时后出现的节点替换先出现的，位置不变。
        """
        if not callable(key_func):
            raise TypeError("key_func 必须是可调用对象")
        items = _check_nodes(nodes)
        start = time.perf_counter()

        positions: dict[Hashable, int] = {}
        result: list[Node] = []
        found = 0
        for index, node in items:
            try:
                key = key_func(node)
                position = positions.get(key)
            except Exception as e:
                logger.error("自定义键函数执行失败，保留节点: #%d %s — %s", index, node.name, e)
                result.append(node)
                continue
            if position is None:
                positions[key] = len(result)
                result.append(node)
                continue
            found += 1
            if not keep_first:
                result[position] = node

        self._record(len(items), found, len(items) - len(result), start)
        return result

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def find_duplicates(self, nodes: Sequence[Node]) -> DuplicateReport:
        """按身份键分组，只返回成员数大于 1 的组。"""
        groups: dict[str, DuplicateGroup] = {}
        report = DuplicateReport()
        for index, node in _check_nodes(nodes):
            key = self.key_generator.generate_key(node)
            group = groups.get(key)
            if group is None:
                groups[key] = DuplicateGroup(key=key, members=[(node, index)])
                continue
            group.members.append((node, index))
            report.duplicate_indexes.append(index)
            report.total_duplicates += 1

        report.groups = [g for g in groups.values() if g.count > 1]
        report.unique_count = len(groups)
        return report

    def deduplication_report(self, original: Sequence[Node], deduplicated: Sequence[Node]) -> dict[str, Any]:
        info = self.find_duplicates(original)
        return {
            "original": len(original),
            "deduplicated": len(deduplicated),
            "removed": len(original) - len(deduplicated),
            "duplicate_groups": len(info.groups),
            "total_duplicates": info.total_duplicates,
            "strategy": STRATEGY_FULL,
        }

    def get_stats(self) -> DedupStats:
        return replace(self.stats)

    def reset_stats(self) -> None:
        self.stats = DedupStats()

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    def _perform_deletion(self, items: list[tuple[int, Node]], opts: DedupOptions) -> tuple[list[Node], int]:
        kept: dict[str, _Kept] = {}
        found = 0
        for index, node in items:
            if self._consider(kept, index, node, opts):
                found += 1
        # 输出顺序按最终保留节点的原始位置
        result = [k.node for k in sorted(kept.values(), key=lambda k: k.index)]
        return result, found

    def _consider(self, kept: dict[str, _Kept], index: int, node: Node, opts: DedupOptions) -> bool:
        """把节点放入 kept，返回它是否与已有节点重复。"""
        key = self.key_generator.generate_key(node)
        current = kept.get(key)
        if current is None:
            kept[key] = _Kept(index, node)
            return False

        if current.score is None:
            current.score = self._completeness(current.node)
        score = self._completeness(node)
        # 分数高者胜出，同分时由 keep_first 决定
        if score > current.score or (score == current.score and not opts.keep_first):
            kept[key] = _Kept(index, node, score)
        return True

    def _perform_renaming(self, items: list[tuple[int, Node]], opts: DedupOptions) -> tuple[list[Node], int]:
        nodes = [node for _, node in items]
        result = rename_duplicates(nodes, opts.template, opts.link, opts.position)
        renamed = sum(1 for before, after in zip(nodes, result) if before is not after)
        return result, renamed

    def _completeness(self, node: Node) -> float:
        try:
            return self.scoring_engine.score(node, {"purpose": "deduplication"})
        except Exception as e:
            logger.warning("评分引擎计算失败，使用备用评分: %s", e)
            return float(basic_completeness(node))

    def _record(self, processed: int, found: int, removed: int, start: float) -> None:
        self.stats.total_processed += processed
        self.stats.duplicates_found += found
        self.stats.duplicates_removed += removed
        self.stats.processing_time_ms += (time.perf_counter() - start) * 1000


def unified_deduplicate(
    engine: DeduplicationEngine,
    nodes: Sequence[Node],
    mode: str = "full",
    options: OptionsLike = None,
    key_func: Optional[Callable[[Node], Hashable]] = None,
) -> list[Node]:
    """统一入口: full / custom / batch / by_type，未知模式按 full 处理。"""
    if mode == "custom":
        opts = _resolve_options(options)
        return engine.custom_deduplicate(nodes, key_func, opts.keep_first)
    if mode == "batch":
        return engine.batch_deduplicate(nodes, options)
    if mode in ("by_type", "byType"):
        return engine.deduplicate_by_type(nodes, options)
    if mode != "full":
        logger.warning("未知的去重模式: %s，使用 full", mode)
    return engine.deduplicate(nodes, options)
