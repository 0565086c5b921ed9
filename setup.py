from setuptools import setup, find_packages

setup(
    name="crm-scheduler",
    version="0.1.0",
    packages=find_packages(include=["crm_scheduler", "crm_scheduler.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "psycopg2-binary",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings",
        "celery",
        "kombu",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
