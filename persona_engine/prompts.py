"""Prompts for LLM operations."""

MEMORY_EXTRACTION_SYSTEM = "你是一个记忆提取助手，擅长从对话中识别重要信息。"

MEMORY_EXTRACTION_PROMPT = """分析以下对话，提取值得记住的信息。对于每条信息，请提供：
1. 记忆内容（简短描述）
2. 类别（basic_info/preferences/experiences/relationships/other）
3. 重要性（1-5）

用户：{user_message}
AI：{assistant_reply}

请以JSON数组格式返回，每项包含：content, category, importance
如果没有需要记住的信息，返回空数组 []"""
