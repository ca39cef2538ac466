from setuptools import setup, find_packages

setup(
    name="tierup",
    version="0.1.0",
    description="Dependency-gated orchestration of Compose services as local processes",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.2",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tierup=tierup.CLI.main:main",
        ],
    },
)
