"""Setup script for specimen-tracking package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="specimen-tracking",
    version="1.0.0",
    description="Specimen lifecycle tracking for viral load and EID testing programs",
    author="Specimen Tracking Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["specimen_tracking*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "specimen-legacy-counts=specimen_tracking.entrypoints.legacy_report:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
