"""Usage accounting and auto-compact prediction.

The assistant compacts a conversation once its usage crosses a threshold
that is not published. The model below approximates it:

    overhead  = BASE + min(messages * PER_MESSAGE, CAP) + floor(cache * CACHE_FACTOR)
                (at most MAX_RATIO of the window)
    available = window - overhead
    threshold = available * factor

Headline usage is measured against the nominal window, while remaining
capacity is measured against the overhead-aware limit. All constants are
estimates and can be overridden through :class:`AutoCompactConstants`.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cccontext.date_utils import normalize_iso_timestamp
from cccontext.model_config import (
    DEFAULT_CONTEXT_WINDOW,
    apply_window_upgrade,
    get_auto_compact_factor,
    get_base_context_window,
    get_model_name,
)
from cccontext.models import AutoCompactEstimate, LatestTurn, SessionSnapshot, TokenBreakdown
from cccontext.monitor.state import SessionRecord


@dataclass(frozen=True)
class AutoCompactConstants:
    base_overhead: int = 25_000
    per_message_factor: int = 15
    message_overhead_cap: int = 5_000
    cache_overhead_factor: float = 0.015
    max_overhead_ratio: float = 0.2
    auto_compact_factor: float = 0.92
    warning_factor: float = 0.8
    error_factor: float = 0.8


DEFAULT_CONSTANTS = AutoCompactConstants()


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def calculate_system_overhead(
    message_count: int = 0,
    cache_size: int = 0,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
    constants: AutoCompactConstants = DEFAULT_CONSTANTS,
) -> int:
    overhead = constants.base_overhead
    if message_count > 0:
        overhead += min(message_count * constants.per_message_factor, constants.message_overhead_cap)
    if cache_size > 0:
        overhead += math.floor(cache_size * constants.cache_overhead_factor)
    return int(min(overhead, context_window * constants.max_overhead_ratio))


def get_warning_level(remaining_percentage: float) -> str:
    if remaining_percentage <= 0:
        return "active"
    if remaining_percentage < 5:
        return "critical"
    if remaining_percentage < 10:
        return "warning"
    if remaining_percentage < 20:
        return "notice"
    return "normal"


@dataclass
class ContextStatus:
    current_usage: int
    available_tokens: int
    effective_limit: float
    auto_compact_enabled: bool
    system_overhead: int
    percent_left: int
    percent_used: int
    remaining_tokens: float
    remaining_until_auto_compact: Optional[float]
    warning_threshold: int
    error_threshold: int
    auto_compact_threshold: float
    is_above_warning_threshold: bool
    is_above_error_threshold: bool
    is_above_auto_compact_threshold: bool
    display_message: Optional[str]


def context_display_message(percent_left: int, auto_compact_enabled: bool, is_above_warning: bool) -> Optional[str]:
    if not is_above_warning:
        return None
    if auto_compact_enabled:
        return f"Context left until auto-compact: {percent_left}%"
    return f"Context low ({percent_left}% remaining) · Run /compact to compact & continue"


def calculate_context_status(
    current_usage: int,
    auto_compact_enabled: bool = False,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
    message_count: int = 0,
    cache_size: int = 0,
    auto_compact_factor: Optional[float] = None,
    constants: AutoCompactConstants = DEFAULT_CONSTANTS,
) -> ContextStatus:
    factor = constants.auto_compact_factor if auto_compact_factor is None else auto_compact_factor
    system_overhead = calculate_system_overhead(message_count, cache_size, context_window, constants)
    available_tokens = context_window - system_overhead
    auto_compact_threshold = available_tokens * factor
    effective_limit = auto_compact_threshold if auto_compact_enabled else available_tokens

    if effective_limit > 0:
        percent_left = max(0, _round_half_up((effective_limit - current_usage) / effective_limit * 100))
        percent_used = _round_half_up(current_usage / effective_limit * 100)
    else:
        percent_left, percent_used = 0, 100

    warning_threshold = effective_limit * constants.warning_factor
    error_threshold = effective_limit * constants.error_factor
    is_above_warning = current_usage >= warning_threshold
    is_above_auto_compact = auto_compact_enabled and current_usage >= auto_compact_threshold

    return ContextStatus(
        current_usage=current_usage,
        available_tokens=available_tokens,
        effective_limit=effective_limit,
        auto_compact_enabled=auto_compact_enabled,
        system_overhead=system_overhead,
        percent_left=percent_left,
        percent_used=percent_used,
        remaining_tokens=max(0, effective_limit - current_usage),
        remaining_until_auto_compact=(
            max(0, auto_compact_threshold - current_usage) if auto_compact_enabled else None
        ),
        warning_threshold=_round_half_up(warning_threshold),
        error_threshold=_round_half_up(error_threshold),
        auto_compact_threshold=auto_compact_threshold,
        is_above_warning_threshold=is_above_warning,
        is_above_error_threshold=current_usage >= error_threshold,
        is_above_auto_compact_threshold=is_above_auto_compact,
        display_message=context_display_message(percent_left, auto_compact_enabled, is_above_warning),
    )


def calculate_auto_compact_info(
    total_tokens: int,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
    message_count: int = 0,
    cache_size: int = 0,
    auto_compact_enabled: bool = True,
    auto_compact_factor: Optional[float] = None,
    constants: AutoCompactConstants = DEFAULT_CONSTANTS,
) -> AutoCompactEstimate:
    """Project token totals onto a fixed context window."""
    factor = constants.auto_compact_factor if auto_compact_factor is None else auto_compact_factor
    status = calculate_context_status(
        total_tokens,
        auto_compact_enabled,
        context_window,
        message_count,
        cache_size,
        factor,
        constants,
    )

    remaining_tokens = max(0, status.effective_limit - total_tokens)
    if status.effective_limit > 0:
        remaining_percentage = _round_half_up(remaining_tokens / status.effective_limit * 100)
    else:
        remaining_percentage = 0

    return AutoCompactEstimate(
        enabled=auto_compact_enabled,
        threshold=factor,
        thresholdPercentage=factor * 100,
        contextWindow=context_window,
        usagePercentage=(total_tokens / context_window * 100) if context_window > 0 else 0.0,
        systemOverhead=status.system_overhead,
        availableTokens=status.available_tokens,
        autoCompactThreshold=status.auto_compact_threshold,
        effectiveLimit=status.effective_limit,
        remainingTokens=remaining_tokens,
        remainingPercentage=remaining_percentage,
        warningLevel=get_warning_level(remaining_percentage),
        willCompactSoon=remaining_percentage < 5,
    )


def estimate_auto_compact(
    total_tokens: int,
    *,
    model: str = "",
    base_context_window: Optional[int] = None,
    message_count: int = 0,
    cache_size: int = 0,
    auto_compact_enabled: bool = True,
    context_window_override: Optional[int] = None,
    constants: AutoCompactConstants = DEFAULT_CONSTANTS,
) -> AutoCompactEstimate:
    """Like :func:`calculate_auto_compact_info`, resolving the window first.

    Without an override, a total above 90% of the baseline window moves the
    whole computation onto the extended window.
    """
    if context_window_override is not None:
        window = context_window_override
    else:
        base = base_context_window if base_context_window is not None else get_base_context_window(model)
        window = apply_window_upgrade(base, total_tokens)

    if constants.auto_compact_factor != DEFAULT_CONSTANTS.auto_compact_factor:
        factor = constants.auto_compact_factor
    else:
        factor = get_auto_compact_factor(model, default=constants.auto_compact_factor)
    return calculate_auto_compact_info(
        total_tokens,
        window,
        message_count=message_count,
        cache_size=cache_size,
        auto_compact_enabled=auto_compact_enabled,
        auto_compact_factor=factor,
        constants=constants,
    )


def estimate_remaining_turns(current_tokens: int, context_window: int, average_tokens_per_turn: int) -> Optional[int]:
    if average_tokens_per_turn <= 0:
        return None
    return max(0, (context_window - current_tokens) // average_tokens_per_turn)


def format_tokens(tokens: float) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return str(int(tokens))


def format_cost(cost: float) -> str:
    return f"${cost:.2f}"


def format_duration(start_time: Optional[datetime], now: Optional[datetime] = None) -> str:
    if start_time is None:
        return "Unknown"
    now = now or datetime.now(timezone.utc)
    minutes = max(0, int((now - start_time).total_seconds() // 60))
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    return f"{minutes}m"


def build_snapshot(
    record: SessionRecord,
    *,
    auto_compact_enabled: bool = True,
    context_window_override: Optional[int] = None,
    last_modified: Optional[datetime] = None,
    constants: AutoCompactConstants = DEFAULT_CONSTANTS,
) -> SessionSnapshot:
    """Derive the dashboard snapshot for one session; nothing here is cached."""
    total_tokens = record.total_tokens
    estimate = estimate_auto_compact(
        total_tokens,
        model=record.model,
        message_count=record.message_count or record.turns,
        cache_size=record.cache_read_tokens,
        auto_compact_enabled=auto_compact_enabled,
        context_window_override=context_window_override,
        constants=constants,
    )
    window = estimate.contextWindow
    average = _round_half_up(total_tokens / record.turns) if record.turns else 0

    latest_turn = None
    if record.latest_usage:
        turn_total = int(record.latest_usage.get("input", 0)) + int(record.latest_usage.get("output", 0))
        latest_turn = LatestTurn(
            input=int(record.latest_usage.get("input", 0)),
            output=int(record.latest_usage.get("output", 0)),
            cache=int(record.latest_usage.get("cache", 0)),
            cacheCreation=int(record.latest_usage.get("cacheCreation", 0)),
            total=turn_total,
            percentage=(turn_total / window * 100) if window > 0 else 0.0,
        )

    modified = record.last_timestamp
    if last_modified is not None:
        modified = last_modified

    return SessionSnapshot(
        sessionId=record.session_id,
        filePath=str(record.file_path),
        model=record.model,
        modelName=get_model_name(record.model) if record.model else "Unknown",
        contextWindow=window,
        tokens=TokenBreakdown(
            inputTokens=record.input_tokens,
            outputTokens=record.output_tokens,
            cacheReadTokens=record.cache_read_tokens,
            cacheCreationTokens=record.cache_creation_tokens,
            totalTokens=total_tokens,
        ),
        totalTokens=total_tokens,
        usagePercentage=estimate.usagePercentage,
        remainingTokens=estimate.remainingTokens,
        remainingPercentage=estimate.remainingPercentage,
        totalCost=record.total_cost,
        turns=record.turns,
        messageCount=record.message_count,
        averageTokensPerTurn=average,
        estimatedRemainingTurns=estimate_remaining_turns(total_tokens, window, average),
        warningLevel=estimate.warningLevel,
        autoCompact=estimate,
        startTime=normalize_iso_timestamp(record.start_time),
        lastModified=normalize_iso_timestamp(modified),
        latestPrompt=record.latest_prompt,
        latestPromptTime=normalize_iso_timestamp(record.latest_prompt_time),
        isCompacted=record.is_compacted,
        state=record.state.value,
        latestTurn=latest_turn,
    )
