"""Setup configuration for the GroupGuard AutoMod engine."""

from setuptools import setup, find_packages

setup(
    name="groupguard",
    version="0.1.0",
    description="Rule-driven AutoMod engine for VRChat group moderation",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "aiosqlite>=0.19",
        "aiohttp>=3.9",
        "py-cord>=2.4",
        "python-dotenv>=1.0",
        "PyYAML>=6.0",
        "prompt_toolkit>=3.0",
        "tenacity>=8.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "groupguard=groupguard.main:main",
        ],
    },
)
