"""领域层模型与协议。

包含：
- message: Message 规范记录及其展示/模型输入视图。
- models: Provider 层使用的 ChatMessage / ChatRequest / ChatStreamChunk。
- conversation: 外部协作者协议（模型调用、上下文来源、项目标识、持久化）。
- exceptions: 业务异常类型定义。
"""
