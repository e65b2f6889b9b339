"""Setup script for the Conductor package."""

from setuptools import setup, find_packages

setup(
    name="conductor",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*", "alembic", "alembic.*")),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "prometheus-client>=0.20",
        "tenacity>=8.2",
        "asyncpg>=0.29",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "httpx>=0.27",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    description="Conductor - multi-agent task run orchestration service",
    author="Conductor Team",
)
