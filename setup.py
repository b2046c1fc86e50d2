"""Setup configuration for adscale package."""

from setuptools import setup, find_packages

setup(
    name="adscale",
    version="0.1.0",
    description="Meta ads insights sync and rule-based budget scale suggestions",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="adscale team",
    python_requires=">=3.9",
    packages=find_packages(where=".", include=["adscale*"]),
    package_dir={"": "."},
    install_requires=[
        "facebook-business>=19.0.1",
        "python-dotenv>=1.0.1",
        "PyYAML>=6.0.2",
        "requests>=2.32.3",
        "pytz>=2020.1",
        "pandas>=2.2.2",
        "SQLAlchemy>=2.0.35",
        "prometheus-client>=0.20.0",
        "jsonschema>=4.23.0",
        "schedule>=1.2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "adscale=adscale.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
