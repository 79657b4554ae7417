"""Pydantic models handed to the dashboard layer."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional

WarningLevel = Literal["active", "critical", "warning", "notice", "normal"]


class TokenBreakdown(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheReadTokens: int = 0
    cacheCreationTokens: int = 0
    totalTokens: int = 0


class AutoCompactEstimate(BaseModel):
    enabled: bool = True
    threshold: float = 0.92  # fraction of available tokens
    thresholdPercentage: float = 92.0
    contextWindow: int = 0
    usagePercentage: float = 0.0
    systemOverhead: int = 0
    availableTokens: int = 0
    autoCompactThreshold: float = 0.0
    effectiveLimit: float = 0.0
    remainingTokens: float = 0.0
    remainingPercentage: int = 100
    warningLevel: WarningLevel = "normal"
    willCompactSoon: bool = False


class LatestTurn(BaseModel):
    input: int = 0
    output: int = 0
    cache: int = 0
    cacheCreation: int = 0
    total: int = 0
    percentage: float = 0.0


class SessionSnapshot(BaseModel):
    sessionId: str
    filePath: str = ""
    model: str = ""
    modelName: str = ""
    contextWindow: int = 0
    tokens: TokenBreakdown = Field(default_factory=TokenBreakdown)
    totalTokens: int = 0
    usagePercentage: float = 0.0
    remainingTokens: float = 0.0
    remainingPercentage: int = 100
    totalCost: float = 0.0
    turns: int = 0
    messageCount: int = 0
    averageTokensPerTurn: int = 0
    estimatedRemainingTurns: Optional[int] = None  # None: no turns yet to extrapolate from
    warningLevel: WarningLevel = "normal"
    autoCompact: AutoCompactEstimate = Field(default_factory=AutoCompactEstimate)
    startTime: str = ""
    lastModified: str = ""
    latestPrompt: str = ""
    latestPromptTime: str = ""
    isCompacted: bool = False
    state: str = ""
    latestTurn: Optional[LatestTurn] = None


class SessionErrorInfo(BaseModel):
    sessionId: str
    filePath: str = ""
    error: str
