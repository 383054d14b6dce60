"""
日志配置
应用启动时调用一次 setup_logging
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: str = "INFO"):
    global _configured
    if _configured:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # TestClient 每个请求都会输出一行 INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
