"""Setup script for the creator payout engine."""

from setuptools import setup, find_packages

setup(
    name="payout_engine",
    version="0.1.0",
    description="Creator payout engine: CPM view tracking, payout rails and settlement",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "payout-engine-api=payout_engine.api.main:main",
            "payout-view-sync=payout_engine.workers.view_sync_worker:main",
            "payout-reconciliation=payout_engine.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
