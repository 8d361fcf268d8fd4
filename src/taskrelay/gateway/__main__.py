"""Gateway 启动入口 -- python -m taskrelay.gateway

环境变量:
    TASKRELAY_HOST: 监听地址（默认 127.0.0.1）
    TASKRELAY_PORT: 监听端口（默认 8000）
"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "taskrelay.gateway.main:app",
        host=os.environ.get("TASKRELAY_HOST", "127.0.0.1"),
        port=int(os.environ.get("TASKRELAY_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
