"""Setup script for the agentflow orchestrator."""

from setuptools import find_packages, setup

setup(
    name="agentflow",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=24.1",
        "httpx>=0.26",
        "tenacity>=8.2",
        "asyncpg>=0.29",
        "prometheus-client>=0.19",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Agentflow - multi-agent workflow orchestrator",
    author="Agentflow Team",
)
