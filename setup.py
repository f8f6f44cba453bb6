"""Setup configuration for medallion-historian package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="medallion-historian",
    version="1.0.0",
    description="Watermark-tracked incremental ingestion and SCD Type 2 dimension merging",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["historian", "historian.*"]),
    python_requires=">=3.8",
    install_requires=[
        "pandas>=1.5.0",
        "pyarrow>=10.0.0",  # Dimension and fact snapshots
        "python-dotenv>=1.0.0",  # .env next to run configs
        "pyyaml>=6.0",
        "structlog>=23.1.0",  # Batch lifecycle events
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "historian=historian.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-engineering medallion-architecture scd2 watermark etl data-pipeline",
)
