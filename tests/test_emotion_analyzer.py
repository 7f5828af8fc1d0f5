"""Tests for the rule-based emotion analyzer."""

import pytest

from persona_engine.emotion.analyzer import (
    EmotionAnalyzer,
    detect_reply_emotion,
    intensity_multiplier,
)
from persona_engine.models import Emotion, EmotionAnalysis


@pytest.fixture
def analyzer():
    return EmotionAnalyzer()


def test_single_emotion_full_confidence(analyzer):
    result = analyzer.analyze("难过")
    assert result.primary == Emotion.SAD
    assert result.confidence == 1.0
    assert result.secondary is None


def test_high_modifier_raises_intensity(analyzer):
    boosted = analyzer.analyze("太开心了")
    plain = analyzer.analyze("开心了")
    assert boosted.primary == plain.primary == Emotion.HAPPY
    assert boosted.intensity == pytest.approx(0.675)
    assert plain.intensity == pytest.approx(0.3)
    assert boosted.intensity > plain.intensity


def test_low_modifier_wins_over_high():
    assert intensity_multiplier("有点太累") == 0.6
    assert intensity_multiplier("非常累") == 1.5
    assert intensity_multiplier("累") == 1.0


def test_negation_flips_happy_to_sad(analyzer):
    result = analyzer.analyze("我不喜欢")
    assert result.primary == Emotion.SAD
    assert result.scores[Emotion.SAD] == 0.5
    assert result.scores[Emotion.HAPPY] == 0.0


def test_empty_input_is_neutral(analyzer):
    result = analyzer.analyze("")
    assert result.primary == Emotion.NEUTRAL
    assert result.secondary is None
    assert result.confidence == 0.5
    assert result.intensity == 0.0
    assert result.valence == 0.0
    assert result.arousal == 0.5


def test_mixed_emotions_valence(analyzer):
    result = analyzer.analyze("开心但是生气")
    assert result.primary == Emotion.ANGRY
    assert result.secondary == Emotion.HAPPY
    assert result.valence == pytest.approx(-1 / 3)
    assert result.arousal == pytest.approx(1.0)


def test_excited_is_high_arousal(analyzer):
    result = analyzer.analyze("好兴奋")
    assert result.scores[Emotion.EXCITED] == 1
    assert result.valence == 1.0
    assert result.arousal == 1.0


def test_generation_params(analyzer):
    sad = analyzer.generation_params(EmotionAnalysis(primary=Emotion.SAD))
    assert (sad.temperature, sad.max_tokens) == (0.7, 600)
    assert "同理心" in sad.style_hint

    neutral = analyzer.generation_params(EmotionAnalysis(primary=Emotion.NEUTRAL))
    assert (neutral.temperature, neutral.max_tokens) == (0.8, 500)

    angry = analyzer.generation_params(EmotionAnalysis(primary=Emotion.ANGRY))
    assert angry.temperature == 0.6


def test_response_style_covers_taxonomy(analyzer):
    for emotion in Emotion:
        style = analyzer.response_style(EmotionAnalysis(primary=emotion))
        assert style.tone
        assert style.suggestions


def test_trend_empty_series(analyzer):
    trend = analyzer.analyze_trend([])
    assert trend.dominant == Emotion.NEUTRAL
    assert trend.stability == 1
    assert trend.trend == "stable"
    assert trend.distribution[Emotion.NEUTRAL] == 1.0


def test_trend_improving(analyzer):
    trend = analyzer.analyze_trend([Emotion.SAD, Emotion.HAPPY, Emotion.HAPPY, Emotion.EXCITED])
    assert trend.dominant == Emotion.HAPPY
    assert trend.trend == "improving"
    assert trend.distribution[Emotion.HAPPY] == 0.5


def test_trend_declining(analyzer):
    trend = analyzer.analyze_trend([Emotion.HAPPY, Emotion.EXCITED, Emotion.SAD, Emotion.ANGRY])
    assert trend.trend == "declining"


def test_trend_single_entry_is_stable(analyzer):
    assert analyzer.analyze_trend([Emotion.HAPPY]).trend == "stable"


def test_stability_measures_evenness(analyzer):
    uniform = analyzer.analyze_trend(list(Emotion))
    concentrated = analyzer.analyze_trend([Emotion.SAD] * 7)
    assert uniform.stability == pytest.approx(1.0)
    assert concentrated.stability < 0.5


@pytest.mark.parametrize("text,expected", [
    ("哈哈，太好了", Emotion.HAPPY),
    ("我有点难过", Emotion.SAD),
    ("嗯，让我想想", Emotion.THINKING),
    ("收到", Emotion.NEUTRAL),
])
def test_detect_reply_emotion(text, expected):
    assert detect_reply_emotion(text) == expected
