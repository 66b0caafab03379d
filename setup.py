"""
Setup script for Ingest Agent Core - Stateful incremental ingestion service.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="ingest-agent-core",
    version="1.0.0",
    description="Plugin-driven incremental data collection with checkpoints and a migration gate",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["ingest_agent", "ingest_agent.*", "api", "api.*"]),
    python_requires=">=3.11",
    install_requires=[
        # Web API
        "fastapi>=0.109.0",
        "uvicorn>=0.27.0",

        # Database drivers
        "asyncpg>=0.29.0",

        # HTTP client
        "aiohttp>=3.9.0",

        # Data validation
        "pydantic>=2.5.0",

        # Monitoring and observability
        "prometheus-client>=0.19.0",

        # Utilities
        "python-dotenv>=1.0.0",
        "tzdata>=2024.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "httpx>=0.26.0",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: FastAPI",
    ],
    include_package_data=True,
    zip_safe=False,
)
