from setuptools import setup, find_packages

setup(
    name="botscheduler",
    version="0.1.0",
    description="Persistent recurring-job scheduler and watch diff poller for chat bots",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "apscheduler>=3.10.0,<4.0",
        "croniter>=2.0.0",
        "python-dotenv>=1.0.0",
        "loguru>=0.7.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
)
