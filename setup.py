from setuptools import setup, find_packages

setup(
    name="traingraph",
    version="0.1.0",
    description="Gradient and optimizer graph construction for static training graphs",
    author="lastweek",
    packages=find_packages(include=["traingraph", "traingraph.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.4.0",
        "numpy>=1.24.0",
        "omegaconf>=2.3.0",
        "tqdm>=4.66.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4.0"],
    },
)
