from setuptools import setup, find_packages

setup(
    name="brazil-flightradar",
    version="0.1.0",
    description="Brazil flight radar backend – OpenSky polling with a multi-tier snapshot cache",
    package_dir={"": "backend"},
    packages=find_packages(where="backend"),
    package_data={"radar": ["data/*.json"]},
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.23",
        "fastapi>=0.95",
        "uvicorn>=0.22",
        "python-dateutil>=2.8",
        "python-dotenv>=1.0",
        "slowapi>=0.1.8",
        # python-opensky, geopy, beautifulsoup4 removed – raw httpx client, no geocoding
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "pytest-httpx>=0.23",
        ],
        "lint": [
            "black>=23.0",
            "flake8>=6.0",
        ],
    },
)
