"""
Memo field enrichment.

Fills a memo's optional fields (genre, importance, session and total
duration) from an LLM, falling back to deterministic rule-based defaults on
any failure: missing credentials, transport errors, timeouts or an
unparseable reply. Values already set on the memo always win.

The cache is an explicit object passed to the enricher so callers and tests
control its lifetime, TTL and invalidation.
"""
import asyncio
import copy
import functools
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from engine.config_manager import SuggestionConfig, config as default_config
from engine.exceptions import LLMError
from engine.llm_adapter import BaseLLMAdapter, RuleBasedAdapter
from engine.logger import get_logger
from engine.models import ImportanceLevel, Memo, MemoType
from engine.utils import parse_llm_json

logger = get_logger("enrichment")

VALID_GENRES = ("study", "exercise", "housework", "work", "hobby", "other")
DEFAULT_GENRE = "other"

SOURCE_CACHE = "cache"
SOURCE_LLM = "llm"
SOURCE_FALLBACK = "fallback"
SOURCE_COMPLETE = "complete"

# 标题关键词 -> 类别（按顺序匹配）
GENRE_KEYWORDS = (
    ("study", ("study", "learn", "read", "学习", "读书", "复习")),
    ("exercise", ("exercise", "gym", "walk", "run", "运动", "健身", "散步")),
    ("housework", ("clean", "laundry", "cook", "打扫", "洗衣", "做饭", "家务")),
    ("work", ("work", "meeting", "email", "工作", "会议", "邮件")),
)

SYSTEM_PROMPT = "You are a task planning assistant. Reply with JSON only."


@dataclass
class EnrichmentResult:
    genre: str
    importance: ImportanceLevel
    session_duration: int
    total_duration_expected: int
    source: str = SOURCE_FALLBACK


@dataclass
class BatchEnrichment:
    memos: List[Memo] = field(default_factory=list)
    source_counts: Dict[str, int] = field(default_factory=dict)


class EnrichmentCache:
    """Memo id -> EnrichmentResult with a time-to-live. Misses are always safe."""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else default_config.ENRICHMENT_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self.hits = 0
        self.misses = 0

    def get(self, memo_id: str) -> Optional[EnrichmentResult]:
        entry = self._entries.get(memo_id)
        if entry is None:
            self.misses += 1
            return None

        stored_at, result = entry
        if self.ttl_seconds > 0 and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[memo_id]
            self.misses += 1
            return None

        self.hits += 1
        return result

    def set(self, memo_id: str, result: EnrichmentResult) -> None:
        self._entries[memo_id] = (self._clock(), result)

    def invalidate(self, memo_id: str) -> bool:
        return self._entries.pop(memo_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)


def infer_genre(title: str) -> str:
    lowered = (title or "").lower()
    for genre, keywords in GENRE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return genre
    return DEFAULT_GENRE


def get_fallback_enrichment(memo: Memo) -> EnrichmentResult:
    """Type-based defaults plus a keyword guess at the genre."""
    memo_type = MemoType(memo.type)
    if memo_type == MemoType.DEADLINE:
        session, total = 45, 90
    elif memo_type == MemoType.ROUTINE:
        # 每次就是一个完整单元
        session, total = 30, 30
    else:
        session, total = 30, 60

    return EnrichmentResult(
        genre=infer_genre(memo.title),
        importance=ImportanceLevel.MEDIUM,
        session_duration=session,
        total_duration_expected=total,
        source=SOURCE_FALLBACK,
    )


def build_prompt(memo: Memo) -> str:
    deadline_info = f"Deadline: {memo.deadline.date().isoformat()}" if memo.deadline else "No deadline"
    return (
        "Given a task, estimate its planning properties.\n\n"
        f"Task: \"{memo.title}\"\n"
        f"Type: {MemoType(memo.type).value}\n"
        f"{deadline_info}\n\n"
        "Estimate:\n"
        f"1. genre: one of [{', '.join(VALID_GENRES)}]\n"
        "2. importance: \"low\", \"medium\" or \"high\"\n"
        "3. sessionDuration: minutes per session (10-120, in 10-minute steps)\n"
        "4. totalDurationExpected: total minutes to finish the task\n\n"
        "Respond with ONLY this JSON object:\n"
        "{\"genre\": \"...\", \"importance\": \"low|medium|high\", "
        "\"sessionDuration\": 30, \"totalDurationExpected\": 60}"
    )


def _as_number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_response(text: str, cfg: SuggestionConfig = default_config) -> Optional[EnrichmentResult]:
    """Validate a model reply. Returns None when it is not a JSON object."""
    data = parse_llm_json(text)
    if data is None:
        return None

    genre = data.get("genre")
    if genre not in VALID_GENRES:
        genre = DEFAULT_GENRE

    try:
        importance = ImportanceLevel(data.get("importance"))
    except ValueError:
        importance = ImportanceLevel.MEDIUM

    session = _as_number(data.get("sessionDuration"))
    if session is None:
        session_duration = cfg.DEFAULT_SESSION_MINUTES
    else:
        session_duration = int(min(cfg.MAX_SESSION_MINUTES, max(cfg.MIN_SESSION_MINUTES, session)))

    total = _as_number(data.get("totalDurationExpected"))
    if total is None:
        total_expected = session_duration * 2
    else:
        total_expected = int(max(session_duration, total))

    return EnrichmentResult(
        genre=genre,
        importance=importance,
        session_duration=session_duration,
        total_duration_expected=total_expected,
        source=SOURCE_LLM,
    )


def needs_enrichment(memo: Memo) -> bool:
    return any(value is None for value in (
        memo.genre, memo.importance, memo.session_duration, memo.total_duration_expected,
    ))


def apply_enrichment(memo: Memo, result: EnrichmentResult) -> Memo:
    """Fill only the fields the memo leaves empty."""
    updated = copy.deepcopy(memo)
    if updated.genre is None:
        updated.genre = result.genre
    if updated.importance is None:
        updated.importance = result.importance
    if updated.session_duration is None:
        updated.session_duration = result.session_duration
    if updated.total_duration_expected is None:
        updated.total_duration_expected = result.total_duration_expected
    return updated


class MemoEnricher:
    """
    Enrich memos through an LLM adapter with cache and fallback.

    `enrich` never raises for model problems; the rule-based result is the
    contract whenever the model cannot answer.
    """

    def __init__(
        self,
        adapter: Optional[BaseLLMAdapter] = None,
        cache: Optional[EnrichmentCache] = None,
        request_delay_seconds: Optional[float] = None,
        cfg: Optional[SuggestionConfig] = None,
    ):
        self.cfg = cfg or default_config
        self.adapter = adapter or RuleBasedAdapter()
        self.cache = cache if cache is not None else EnrichmentCache(self.cfg.ENRICHMENT_CACHE_TTL_SECONDS)
        self.request_delay_seconds = (
            request_delay_seconds
            if request_delay_seconds is not None
            else self.cfg.ENRICHMENT_REQUEST_DELAY_SECONDS
        )

    async def _call_llm(self, memo: Memo) -> Optional[EnrichmentResult]:
        if self.adapter.is_rule_based:
            return None

        # adapter 是同步 httpx 调用，放到线程池
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                functools.partial(
                    self.adapter.generate,
                    build_prompt(memo),
                    system_prompt=SYSTEM_PROMPT,
                    temperature=self.cfg.ENRICHMENT_TEMPERATURE,
                    max_tokens=300,
                ),
            )
        except LLMError as e:
            logger.warning(f"补全失败，使用规则默认值 ({memo.id}): {e.message}")
            return None
        except Exception as e:
            # 任何模型侧异常都不能中断排程
            logger.warning(f"补全异常，使用规则默认值 ({memo.id}): {type(e).__name__}: {e}")
            return None

        if not response.success:
            logger.warning(f"补全失败，使用规则默认值 ({memo.id}): {response.error}")
            return None

        result = parse_response(response.content, self.cfg)
        if result is None:
            logger.warning(f"模型返回无法解析 ({memo.id})，使用规则默认值")
        return result

    async def enrich(self, memo: Memo) -> EnrichmentResult:
        cached = self.cache.get(memo.id)
        if cached is not None:
            logger.debug(f"Enrichment cache hit: {memo.id}")
            return replace(cached, source=SOURCE_CACHE)

        result = await self._call_llm(memo) or get_fallback_enrichment(memo)
        self.cache.set(memo.id, result)
        logger.info(f"Enriched {memo.id} via {result.source}")
        return result

    async def enrich_memo(self, memo: Memo) -> Memo:
        if not needs_enrichment(memo):
            return memo
        return apply_enrichment(memo, await self.enrich(memo))

    async def enrich_memos(self, memos: Sequence[Memo]) -> BatchEnrichment:
        """Sequential, with a pause between model calls."""
        batch = BatchEnrichment()
        called = False

        for memo in memos:
            if not needs_enrichment(memo):
                batch.memos.append(memo)
                batch.source_counts[SOURCE_COMPLETE] = batch.source_counts.get(SOURCE_COMPLETE, 0) + 1
                continue

            if called and self.request_delay_seconds > 0:
                await asyncio.sleep(self.request_delay_seconds)

            result = await self.enrich(memo)
            called = result.source != SOURCE_CACHE
            batch.memos.append(apply_enrichment(memo, result))
            batch.source_counts[result.source] = batch.source_counts.get(result.source, 0) + 1

        return batch
