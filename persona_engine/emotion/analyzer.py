"""Keyword-driven emotion analysis.

Classifies an utterance into the fixed seven-emotion taxonomy, derives
valence/arousal from the per-emotion scores, maps the result to response
guidance and generation parameters, and summarises an emotion time series.
Everything is local and deterministic; no backend calls.
"""

from __future__ import annotations

import logging
import math

from persona_engine.config import ENGINE_CONFIG
from persona_engine.models import (
    Emotion,
    EmotionAnalysis,
    EmotionTrend,
    GenerationParams,
    ResponseStyle,
)

logger = logging.getLogger(__name__)

EMOTION_KEYWORDS: dict[Emotion, tuple[str, ...]] = {
    Emotion.NEUTRAL: ("嗯", "好的", "知道了", "明白", "了解"),
    Emotion.HAPPY: ("开心", "高兴", "快乐", "哈哈", "棒", "好", "喜欢", "爱", "幸福", "满意", "舒服"),
    Emotion.SAD: ("难过", "伤心", "失落", "哭", "不开心", "郁闷", "沮丧", "痛苦", "悲伤", "遗憾"),
    Emotion.ANGRY: ("生气", "愤怒", "讨厌", "烦", "气", "可恶", "恼火", "不满", "愤慨"),
    Emotion.SURPRISED: ("惊讶", "意外", "没想到", "竟然", "天啊", "哇", "震惊", "不可思议", "吓"),
    Emotion.THINKING: ("想想", "考虑", "思考", "不确定", "也许", "可能", "大概", "琢磨"),
    Emotion.EXCITED: ("激动", "兴奋", "期待", "太棒了", "哇", "厉害", "赞", "牛"),
}

# Shorter list used to tag generated replies: first matching emotion wins
REPLY_EMOTION_KEYWORDS: dict[Emotion, tuple[str, ...]] = {
    Emotion.HAPPY: ("开心", "高兴", "快乐", "哈哈", "棒", "好", "喜欢", "爱"),
    Emotion.SAD: ("难过", "伤心", "失落", "哭", "不开心", "郁闷"),
    Emotion.ANGRY: ("生气", "愤怒", "讨厌", "烦", "气", "可恶"),
    Emotion.SURPRISED: ("惊讶", "意外", "没想到", "竟然", "天啊"),
    Emotion.THINKING: ("嗯", "想想", "考虑", "思考", "不确定"),
    Emotion.EXCITED: ("激动", "兴奋", "期待", "太棒了", "哇"),
}

HIGH_INTENSITY_MODIFIERS = ("非常", "特别", "超级", "太", "极其", "十分", "格外", "相当")
LOW_INTENSITY_MODIFIERS = ("有点", "稍微", "一点", "略微", "些许")
HIGH_INTENSITY_MULTIPLIER = 1.5
LOW_INTENSITY_MULTIPLIER = 0.6

NEGATION_WORDS = ("不", "没", "别", "勿", "非", "未", "无")

POSITIVE_EMOTIONS = frozenset({Emotion.HAPPY, Emotion.EXCITED})

RESPONSE_STYLES: dict[Emotion, ResponseStyle] = {
    Emotion.NEUTRAL: ResponseStyle("平和、友好", "适中", ["保持自然交流", "可以主动提出话题"]),
    Emotion.HAPPY: ResponseStyle("欢快、积极", "稍快", ["分享用户的喜悦", "使用积极的语言", "可以适当使用感叹号"]),
    Emotion.SAD: ResponseStyle("温柔、同理心", "缓慢", ["表达理解和安慰", "避免说教", "倾听为主"]),
    Emotion.ANGRY: ResponseStyle("冷静、理解", "适中", ["保持冷静", "认同情绪", "避免辩解", "提供解决方案"]),
    Emotion.SURPRISED: ResponseStyle("好奇、感兴趣", "稍快", ["回应惊讶", "询问细节", "分享感受"]),
    Emotion.THINKING: ResponseStyle("深思、引导", "缓慢", ["给予思考空间", "提供不同角度", "避免急于给答案"]),
    Emotion.EXCITED: ResponseStyle("热情、活力", "快", ["匹配能量水平", "展现热情", "鼓励分享更多"]),
}

# primary emotion -> (temperature, max_tokens or None for the base value, style hint)
_GENERATION_TUNING: dict[Emotion, tuple[float | None, int | None, str]] = {
    Emotion.HAPPY: (0.9, None, "用积极、活泼的语气回应"),
    Emotion.EXCITED: (0.9, None, "用积极、活泼的语气回应"),
    Emotion.SAD: (0.7, 600, "用温柔、理解的语气回应，表达同理心"),
    Emotion.ANGRY: (0.6, None, "保持冷静、理性，避免火上浇油"),
    Emotion.THINKING: (0.7, 600, "提供深思熟虑的回答，引导思考"),
    Emotion.SURPRISED: (0.85, None, "表达好奇和兴趣，询问更多细节"),
    Emotion.NEUTRAL: (None, None, "保持自然、友好的对话"),
}


class EmotionAnalyzer:
    """Rule-based classifier over the fixed emotion taxonomy."""

    def __init__(self, config: dict | None = None) -> None:
        self.config = config or ENGINE_CONFIG

    def analyze(self, text: str) -> EmotionAnalysis:
        """Classify an utterance.

        Steps, in order: keyword counts per emotion, negation (swaps happy
        and sad at half weight), intensity multiplier, then ranking. When
        both a high and a low intensity modifier are present, the low one
        wins: it is the more local qualifier.
        """
        processed = text.lower().strip()

        scores: dict[Emotion, float] = {emotion: 0.0 for emotion in Emotion}
        for emotion, keywords in EMOTION_KEYWORDS.items():
            scores[emotion] += sum(1 for kw in keywords if kw in processed)

        multiplier = intensity_multiplier(processed)

        if has_negation(processed):
            happy = scores[Emotion.HAPPY]
            scores[Emotion.HAPPY] = scores[Emotion.SAD] * 0.5
            scores[Emotion.SAD] = happy * 0.5

        for emotion in scores:
            scores[emotion] *= multiplier

        # sorted() is stable, so ties resolve in taxonomy order (neutral first)
        ranked = sorted(scores.items(), key=lambda x: x[1], reverse=True)
        primary, top_score = ranked[0]
        secondary = ranked[1][0] if ranked[1][1] > 0 else None

        total = sum(scores.values())
        confidence = top_score / total if total > 0 else 0.5
        intensity = min(1.0, top_score * 0.3 * multiplier)

        return EmotionAnalysis(
            primary=primary,
            secondary=secondary,
            intensity=intensity,
            confidence=confidence,
            valence=valence(scores),
            arousal=arousal(scores),
            scores=scores,
        )

    def response_style(self, analysis: EmotionAnalysis) -> ResponseStyle:
        return RESPONSE_STYLES[analysis.primary]

    def generation_params(self, analysis: EmotionAnalysis) -> GenerationParams:
        """Generation tuning for the detected emotion."""
        temperature, max_tokens, hint = _GENERATION_TUNING[analysis.primary]
        return GenerationParams(
            temperature=temperature if temperature is not None else self.config["base_temperature"],
            max_tokens=max_tokens if max_tokens is not None else self.config["base_max_tokens"],
            style_hint=hint,
        )

    def analyze_trend(self, series: list[Emotion]) -> EmotionTrend:
        """Summarise a time-ordered emotion series (oldest first).

        ``stability`` is ``1 / (1 + 10 * stdev)`` of the distribution against
        the uniform baseline. It reads 1.0 for a perfectly even spread and
        drops as the series concentrates on fewer emotions, so it measures
        evenness rather than consistency of mood.
        """
        if not series:
            distribution = {emotion: 0.0 for emotion in Emotion}
            distribution[Emotion.NEUTRAL] = 1.0
            return EmotionTrend(
                dominant=Emotion.NEUTRAL, stability=1.0,
                distribution=distribution, trend="stable",
            )

        total = len(series)
        counts = {emotion: 0 for emotion in Emotion}
        for emotion in series:
            counts[Emotion(emotion)] += 1
        distribution = {emotion: count / total for emotion, count in counts.items()}

        dominant = max(distribution.items(), key=lambda x: x[1])[0]

        mean = 1 / len(Emotion)
        variance = sum((share - mean) ** 2 for share in distribution.values()) / len(distribution)
        stability = 1 / (1 + math.sqrt(variance) * 10)

        return EmotionTrend(
            dominant=dominant,
            stability=stability,
            distribution=distribution,
            trend=_trend_direction(series),
        )


def intensity_multiplier(text: str) -> float:
    if any(mod in text for mod in LOW_INTENSITY_MODIFIERS):
        return LOW_INTENSITY_MULTIPLIER
    if any(mod in text for mod in HIGH_INTENSITY_MODIFIERS):
        return HIGH_INTENSITY_MULTIPLIER
    return 1.0


def has_negation(text: str) -> bool:
    return any(word in text for word in NEGATION_WORDS)


def valence(scores: dict[Emotion, float]) -> float:
    """(positive - negative) / (positive + negative), 0 when neither is present."""
    positive = scores[Emotion.HAPPY] + scores[Emotion.EXCITED]
    negative = scores[Emotion.SAD] + scores[Emotion.ANGRY]
    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / total


def arousal(scores: dict[Emotion, float]) -> float:
    """Share of high-arousal emotions, 0.5 when nothing scored."""
    high = scores[Emotion.EXCITED] + scores[Emotion.ANGRY] + scores[Emotion.SURPRISED]
    low = scores[Emotion.SAD] + scores[Emotion.THINKING] + scores[Emotion.NEUTRAL]
    total = high + low
    if total == 0:
        return 0.5
    return high / total


def detect_reply_emotion(text: str) -> Emotion:
    """Tag a generated reply with the first emotion whose keyword it contains."""
    for emotion, keywords in REPLY_EMOTION_KEYWORDS.items():
        if any(kw in text for kw in keywords):
            return emotion
    return Emotion.NEUTRAL


def _trend_direction(series: list[Emotion]) -> str:
    """Compare the positive share of the first and second halves."""
    mid = len(series) // 2
    first, second = series[:mid], series[mid:]
    if not first:
        return "stable"

    def positive_share(part: list[Emotion]) -> float:
        return sum(1 for e in part if Emotion(e) in POSITIVE_EMOTIONS) / len(part)

    diff = positive_share(second) - positive_share(first)
    if diff > 0.1:
        return "improving"
    if diff < -0.1:
        return "declining"
    return "stable"
