"""
Setup configuration for adwatch package.
"""

from setuptools import setup, find_packages

setup(
    name="adwatch",
    version="0.1.0",
    description="Ad account monitoring, creative fatigue detection and alerting",
    packages=find_packages(include=["adwatch", "adwatch.*"]),
    python_requires=">=3.9",
    install_requires=[
        "supabase>=2.0.0",
        "postgrest>=0.13.0",
        "pydantic>=2.5.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "click>=8.1.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "slowapi>=0.1.9",
        "pytz>=2023.3",
        "tenacity>=8.2.0",
        "logfire>=0.40.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "adwatch=adwatch.cli.main:cli",
        ],
    },
)
