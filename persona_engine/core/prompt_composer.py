"""System prompt composition.

The prompt is built in sections, each appended to the previous:
  1. Persona identity, personality, background, key experiences, style, rules
  2. Retrieved memories (omitted when there are none)
  3. Current emotional situation of the user (omitted without an analysis)
  4. Few-shot examples (omitted when there are none)
"""

from __future__ import annotations

import re

from persona_engine.config import ENGINE_CONFIG
from persona_engine.models import (
    Emotion,
    EmotionAnalysis,
    FewShotExample,
    Memory,
    Persona,
    Personality,
)

EMOTION_LABELS = {
    Emotion.NEUTRAL: "平静",
    Emotion.HAPPY: "开心",
    Emotion.SAD: "难过",
    Emotion.ANGRY: "生气",
    Emotion.SURPRISED: "惊讶",
    Emotion.THINKING: "思考中",
    Emotion.EXCITED: "兴奋",
}

EMOTION_GUIDANCE = {
    Emotion.HAPPY: "分享用户的喜悦，使用积极的语言回应",
    Emotion.SAD: "表达同理心和安慰，避免说教，以倾听为主",
    Emotion.ANGRY: "保持冷静，认同情绪但不火上浇油，可以提供建议",
    Emotion.SURPRISED: "表现出好奇和兴趣，询问更多细节",
    Emotion.THINKING: "给予思考空间，提供不同角度的见解",
    Emotion.EXCITED: "匹配用户的能量水平，展现热情",
    Emotion.NEUTRAL: "保持自然友好的交流",
}

# (attribute, high > 0.7, middle > 0.4, low)
_TRAIT_SENTENCES = (
    ("extroversion", "你非常外向，喜欢社交，充满活力",
     "你的性格比较外向，但也需要独处时间", "你比较内向，喜欢安静和独处"),
    ("rationality", "你是个理性的人，决策时依赖逻辑和分析",
     "你在理性和感性之间保持平衡", "你是个感性的人，容易被情感驱动"),
    ("seriousness", "你为人严肃认真，注重规则和秩序",
     "你能在严肃和幽默之间切换", "你幽默风趣，喜欢用轻松的方式交流"),
    ("openness", "你思想开放，乐于接受新事物和新观点",
     "你对新事物保持开放但谨慎的态度", "你比较保守，倾向于坚持传统和熟悉的事物"),
    ("gentleness", "你性格温和友善，善解人意",
     "你有自己的主见，但也能理解他人", "你个性强势，有很强的主见和领导力"),
)

_WHITESPACE = re.compile(r"\s+")


def describe_personality(p: Personality) -> str:
    """Numbered sentence per trait, picked by high/middle/low band."""
    lines = []
    for index, (attr, high, middle, low) in enumerate(_TRAIT_SENTENCES, start=1):
        value = getattr(p, attr)
        if value > 0.7:
            sentence = high
        elif value > 0.4:
            sentence = middle
        else:
            sentence = low
        lines.append(f"{index}. {sentence}")
    return "\n".join(lines)


def dialogue_style(p: Personality) -> str:
    style = "在对话中：\n"

    if p.extroversion > 0.6:
        style += "- 主动分享想法和感受\n- 使用生动的语言和表情符号\n"
    else:
        style += "- 回答简洁但有深度\n- 需要时才主动分享\n"

    if p.rationality > 0.6:
        style += "- 给出有逻辑的解释和建议\n- 分析问题时条理清晰\n"
    else:
        style += "- 表达情感和直觉\n- 分享个人感受和故事\n"

    if p.seriousness < 0.4:
        style += "- 适当使用幽默和俏皮话\n- 让对话轻松愉快\n"

    if p.gentleness > 0.6:
        style += "- 用温和的语气\n- 表达关心和理解\n"

    return style


def normalize_user_input(text: str, max_chars: int | None = None) -> str:
    """Collapse whitespace and truncate overly long input."""
    max_chars = max_chars or ENGINE_CONFIG["max_user_input_chars"]
    normalized = _WHITESPACE.sub(" ", text.strip())
    if len(normalized) > max_chars:
        normalized = normalized[:max_chars] + "..."
    return normalized


class PromptComposer:
    """Builds the system prompt for one generation request."""

    def __init__(self, config: dict | None = None) -> None:
        self.config = config or ENGINE_CONFIG

    def system_prompt(self, persona: Persona) -> str:
        prompt = f"你是{persona.name}"
        if persona.age:
            prompt += f"，{persona.age}岁"
        if persona.gender == "male":
            prompt += "，男性"
        elif persona.gender == "female":
            prompt += "，女性"
        if persona.occupation:
            prompt += f"，职业是{persona.occupation}"
        prompt += "。\n\n"

        prompt += "【性格特质】\n" + describe_personality(persona.personality) + "\n\n"
        prompt += "【背景故事】\n" + persona.background_story + "\n\n"

        if persona.experiences:
            top = sorted(persona.experiences, key=lambda e: e.importance, reverse=True)
            prompt += "【重要经历】\n"
            for exp in top[:self.config["max_experiences_in_prompt"]]:
                prompt += f"- {exp.year}年：{exp.event}\n"
            prompt += "\n"

        prompt += "【对话风格】\n" + dialogue_style(persona.personality) + "\n\n"

        prompt += "【重要准则】\n"
        prompt += f'- 始终以{persona.name}的身份回答，使用第一人称"我"\n'
        prompt += "- 保持角色的一致性，符合性格和背景设定\n"
        prompt += "- 回答要自然、真实，像真人一样交流\n"
        prompt += "- 可以表达情感、观点和个人经历\n"
        prompt += '- 避免说"作为AI"或类似的话\n'
        return prompt

    def inject_memories(self, prompt: str, memories: list[Memory]) -> str:
        if not memories:
            return prompt

        section = "\n【你记得的信息】\n"
        for index, mem in enumerate(memories, start=1):
            section += f"{index}. {mem.content}"
            if mem.context:
                section += f" ({mem.context})"
            section += "\n"
        section += "\n请在回答时自然地运用这些记忆，但不要生硬地列举。\n"
        return prompt + section

    def adjust_for_emotion(self, prompt: str, analysis: EmotionAnalysis) -> str:
        section = "\n【当前对话情境】\n"
        section += f"用户当前的情绪：{EMOTION_LABELS.get(analysis.primary, '平静')}"
        if analysis.intensity > 0.6:
            section += "（较强）"
        section += "\n"
        guidance = EMOTION_GUIDANCE.get(analysis.primary, EMOTION_GUIDANCE[Emotion.NEUTRAL])
        section += f"建议：{guidance}\n"
        return prompt + section

    def add_few_shot_examples(self, prompt: str, examples: list[FewShotExample]) -> str:
        if not examples:
            return prompt

        section = "\n【对话示例】\n以下是一些符合你性格的对话示例：\n\n"
        for index, example in enumerate(examples, start=1):
            section += f"示例{index}：\n用户：{example.user}\n你：{example.assistant}\n\n"
        section += "请参考这些示例的风格和语气进行回答。\n"
        return prompt + section

    def add_relationship_stage(
        self, prompt: str, message_count: int, dominant_topics: list[str],
    ) -> str:
        """Adjust familiarity to how long the persona and user have talked."""
        if message_count > 50:
            prompt += "\n你们已经聊了很多次了，可以像老朋友一样交流。\n"
        elif message_count < 5:
            prompt += "\n这是你们刚开始认识，保持友好但不要过于熟稔。\n"
        if dominant_topics:
            prompt += f"\n你们经常讨论：{'、'.join(dominant_topics)}等话题。\n"
        return prompt

    def compose(
        self,
        persona: Persona,
        memories: list[Memory] | None = None,
        emotion: EmotionAnalysis | None = None,
        examples: list[FewShotExample] | None = None,
    ) -> str:
        prompt = self.system_prompt(persona)
        if memories:
            prompt = self.inject_memories(prompt, memories)
        if emotion is not None:
            prompt = self.adjust_for_emotion(prompt, emotion)
        if examples:
            prompt = self.add_few_shot_examples(prompt, examples)
        return prompt
