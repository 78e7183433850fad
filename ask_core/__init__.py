"""ask_core 顶层包。

该包提供命令行 LLM 问答工具的核心实现，
包括配置加载、领域模型、Provider 适配（OpenAI / Anthropic 流式接口）、
SSE 解析、终端流式输出与基于 SQLite 的会话历史存储。
"""

from ask_core.api.service import ChatSession, run_chat

__all__ = ["ChatSession", "run_chat"]
