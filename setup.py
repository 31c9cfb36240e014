"""
TaskAPI setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="taskapi",
    version="1.0.0",
    description="TaskAPI — tasks and comments REST API over a key-value store",
    packages=find_packages(include=["taskapi", "taskapi.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "taskapi=taskapi.cli:main",
        ],
    },
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "redis>=5.0.1",
        "bcrypt>=4.1",
        "cryptography>=42.0",
        "PyJWT>=2.8",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
