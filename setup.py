"""
Setup script for Vector Sync Orchestrator

Synchronizes relational tables into vector-store collections with priority
scheduling, batched retrying writes, consistency checks and compensation.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Vector Sync Orchestrator

    Synchronizes relational tables into vector-store collections with priority
    scheduling, memory-aware batching, retries, consistency checks and
    compensation.
    """

setup(
    name="vector-sync-orchestrator",
    version="1.0.0",
    description="Relational to vector-store synchronization with scheduling and consistency checks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Vector Sync Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="vector store, synchronization, embeddings, scheduling, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "psutil>=5.8.0",

        # Scheduling
        "croniter>=1.3.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vector-sync-orchestrator=vector_sync_orchestrator.cli.main:main",
            "vso=vector_sync_orchestrator.cli.main:main",
        ],
    },
)
