from setuptools import setup, find_packages

setup(
    name="transferstore",
    version="0.1.0",
    description="Durable, event-sourced history of peer-to-peer file transfers",
    author="transferstore Team",
    packages=find_packages(include=["transferstore", "transferstore.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "sqlalchemy>=2.0",
        "click>=8.0",
        "rich>=13.0",
        "python-dateutil>=2.8",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "transferstore=transferstore.cli:main",
        ],
    },
)
