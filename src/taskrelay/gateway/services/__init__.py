"""Gateway 内部服务"""
