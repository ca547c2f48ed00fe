"""Setup configuration for the ChatSafe moderation agent."""

from setuptools import setup, find_packages

setup(
    name="chatsafe",
    version="0.1.0",
    description="A moderation agent for decentralized chat with an on-chain infraction ledger",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "openai>=1.40",
        "aiosqlite>=0.20",
        "PyYAML>=6.0",
        "python-dotenv>=1.0",
        "prompt_toolkit>=3.0",
        "aiohttp>=3.9",
        "web3>=7.0",
        "eth-account>=0.13",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "chatsafe=chatsafe.main:main",
        ],
    },
)
