"""taskrelay.gateway -- FastAPI 传输层，核心能力的薄封装"""
