from setuptools import setup

setup(
    name="feed-pager",
    version="1.0.0",
    description="Unified pagination & load-more state manager for content feeds, with CLI and inspection server",
    py_modules=[
        # Config
        "cli", "server", "feed_config",
        # Core
        "FeedTypes", "FeedExceptions", "FeedState", "FeedOverlay",
        "FeedValidator", "FeedStateMachine", "FeedResolver", "FeedManager",
        # Content sources
        "FeedRepository", "FeedCache",
    ],
    install_requires=[
        "httpx>=0.26.0",   # async HTTP client: HttpContentRepository
        "flask",           # server.py inspection server
        "click>=8.0",      # CLI
        "pydantic>=2.0",
        "pydantic-settings>=2.0",   # feed_config: FEEDPAGER_* settings
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "feedpager=cli:cli",
        ],
    },
    python_requires=">=3.11",
)
