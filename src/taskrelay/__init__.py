"""taskrelay -- 编码 Agent 任务生命周期、依赖图与委派协调"""
