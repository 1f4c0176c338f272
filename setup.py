from setuptools import setup, find_packages

setup(
    name="rebalance-engine",
    version="1.0.0",
    author="Portfolio Rebalancer Team",
    description="Cash-safe rebalance decision and execution engine for multi-agent trading workflows",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"rebalance_engine": ["py.typed"]},
    install_requires=[
        "pydantic==2.11.7",
        "PyYAML>=6.0",
        "aiohttp>=3.9",
        "redis>=5.0",
        "dependency-injector>=4.41",
        "APScheduler>=3.10,<4",
        "fastapi>=0.110",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "rebalance-worker=rebalance_engine.main:run",
        ],
    },
    python_requires=">=3.11",
)
