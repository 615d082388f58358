#!/usr/bin/env python3
"""
Run script for the ContentFlow server.

Usage:
    python run.py

Settings come from the environment or a ``.env`` file:
    HOST=127.0.0.1 PORT=8080 GENERATION_URL=http://localhost:9000/v1/completions python run.py
"""

import uvicorn
import os

from contentflow.config import settings


def main():
    """Serve the ContentFlow API."""
    reload = os.getenv("RELOAD", str(settings.DEBUG)).lower() == "true"
    generator = settings.GENERATION_URL or "offline template generator"

    print(f"""
ContentFlow v{settings.APP_VERSION}
  Server:     http://{settings.HOST}:{settings.PORT}
  API Docs:   http://{settings.HOST}:{settings.PORT}/docs
  Generator:  {generator}
  Demo workflow ID: linkedin-post-demo
    """)

    uvicorn.run(
        "contentflow.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
