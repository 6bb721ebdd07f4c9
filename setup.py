from setuptools import setup, find_packages

setup(
    name="pyFlowBalance",
    version="0.1.0",
    description="Flow measurement reconciliation with global and GLR consistency tests",
    author="pyFlowBalance Team",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.7.0",
        "networkx>=2.6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=6.0.0",
            "pytest-cov>=2.12.0",
            "black>=21.0.0",
            "flake8>=4.0.0",
            "mypy>=0.910",
        ]
    },
)
