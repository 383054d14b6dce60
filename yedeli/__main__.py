"""
本地启动：python -m yedeli
"""

import uvicorn

from .config.settings import settings


def main():
    uvicorn.run("yedeli.app:app", host="127.0.0.1", port=8000, reload=settings.debug)


if __name__ == "__main__":
    main()
