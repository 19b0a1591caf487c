from setuptools import setup, find_packages

setup(
    name="lan-scanner",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"lan_scanner": ["data/*.csv"]},
    install_requires=[
        "aiohttp>=3.9.0",
        "cryptography>=41.0.0",
        "pydantic>=2.5.0",
        "pyyaml>=6.0",
        "netifaces>=0.11.0",
        "zeroconf>=0.131.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lan-scanner=lan_scanner.scanner_service:main",
        ],
    },
    python_requires=">=3.11",
)
