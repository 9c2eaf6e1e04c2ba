"""Setup script for DB Master Backend"""

from setuptools import setup, find_packages

setup(
    name="db-master-backend",
    version="1.0.0",
    description="DB Master database administration backend",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn[standard]>=0.23.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "motor>=3.3.0",
        "pymongo>=4.5.0",
        "redis>=5.0.0",
        "celery>=5.3.0",
        "croniter>=2.0.0",
        "structlog>=23.1.0",
        "python-jose[cryptography]>=3.3.0",
        "prometheus-client>=0.18.0",
        "httpx>=0.25.0",
        "python-dotenv>=1.0.0",
        "aiomysql>=0.2.0",
        "PyMySQL>=1.1.0",
        "cryptography>=41.0.0",
        "tzdata>=2023.3",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "hypothesis>=6.88.0",
        ]
    },
)
