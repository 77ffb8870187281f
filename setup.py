"""Setup script for the Checkout System."""

from setuptools import setup

setup(
    name="checkout-systems",
    version="1.0.0",
    description="Checkout saga with idempotent Stripe payments and reconciliation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=[
        "api",
        "config",
        "core",
        "database",
        "integrations",
        "monitoring",
        "workers",
    ],
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.27.0",
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
            "checkout-api=api.main:run",
            "checkout-reconciler=workers.reconciliation_worker:main",
            "checkout-outbox=workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
