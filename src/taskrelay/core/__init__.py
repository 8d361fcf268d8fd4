"""taskrelay Core -- 任务存储、依赖图、状态机、委派协调与执行监控

传输层无关：gateway 等调用方通过 TaskService / DelegationCoordinator /
ExecutionMonitor 访问核心能力。
"""
