"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="painter-coach-chat",
    version="0.1.0",
    description="Conversation streaming and reconciliation engine for the PainterGrowth AI coach",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.110",
        "httpx>=0.27",
        "opentelemetry-instrumentation-fastapi>=0.45b0",
        "prometheus-client>=0.20",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
