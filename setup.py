"""Setup script for the purchase saga services."""

from setuptools import setup, find_packages

setup(
    name="purchase-saga",
    version="0.1.0",
    description="Order/payment saga with transactional outbox and payment retry coordination",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["purchase_saga", "purchase_saga.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "purchase-saga-outbox-relay=purchase_saga.workers.outbox_relay:main",
            "purchase-saga-retry-worker=purchase_saga.workers.retry_worker:main",
            "purchase-saga-listeners=purchase_saga.workers.listeners:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
