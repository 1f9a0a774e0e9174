"""领域层模型与协议。

包含：
- models: Message / Settings / QueueEntry 等运行时数据模型。
- conversation: 对话历史与 StateStore 抽象。
- exceptions: 业务异常类型定义。
- result: 预期失败路径使用的 Ok / Err 结果值。
"""
