"""Setup script for the Order Reconciliation service."""

from setuptools import setup, find_packages

setup(
    name="order-reconciliation",
    version="1.0.0",
    description="Exactly-once order materialization and Paystack payment reconciliation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["order_reconciliation", "order_reconciliation.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.5",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.20.0",
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
            "order-maintenance-worker=order_reconciliation.workers.maintenance_worker:main",
            "order-invoice-worker=order_reconciliation.workers.invoice_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
