"""Setup configuration for ingestion-foundry package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="ingestion-foundry",
    version="1.0.0",
    description="Metadata-driven incremental ingestion orchestrator with exactly-once watermark advancement",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["ingestion", "ingestion.*"]),
    python_requires=">=3.9",
    install_requires=[
        "boto3>=1.36.0",  # Conditional writes for the S3 watermark store
        "pandas>=1.5.0",
        "pyarrow>=10.0.0",  # Required for parquet support
        "sqlalchemy>=2.0.0",  # Database extractor
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "requests>=2.28.0",
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "moto[s3]>=5.1.0",  # Conditional put_object support
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "ingest-cycle=ingestion.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-engineering incremental-load watermark change-data-capture etl orchestration",
)
