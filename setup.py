from setuptools import setup, find_packages

setup(
    name="music-rec-engine",
    version="0.1.0",
    description="Hybrid personalized music recommendation engine",
    author="Music Recommendation Engine Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "numpy>=1.21.0",
        "pandas>=2.0.0",
        "pyyaml>=6.0",
        "scikit-learn>=1.3.0",
        "sqlalchemy>=2.0.0",
        "fastapi>=0.100.0",
        "pydantic>=2.0.0",
        "uvicorn>=0.23.0",
        "click>=8.1.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "httpx>=0.24.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "music-rec-engine=music_rec_engine.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Sound/Audio",
    ],
    python_requires=">=3.10",
)
