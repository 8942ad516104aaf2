"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="desmond-chat",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "pydantic>=2",
        "structlog",
        "google-genai",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
        "tzdata",
    ],
    extras_require={
        "server": ["uvicorn"],
        "test": ["pytest", "pytest-asyncio", "httpx"],
    },
)
