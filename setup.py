"""
Setup configuration for scheduled-tasks package.
"""

from setuptools import setup
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="scheduled-tasks",
    version="0.1.0",
    description="Run shell commands on interval, daily or cron schedules with execution history",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=["scheduled_tasks"],

    # Dependencies
    install_requires=[
        "APScheduler>=3.11.0,<4",
        "tzlocal>=3.0",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "tzdata",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "scheduled-tasks=scheduled_tasks.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="scheduler cron shell tasks automation",
)
