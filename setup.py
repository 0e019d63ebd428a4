#!/usr/bin/env python3
"""
Setup script for the Proctoring Risk Engine.
"""

import os
import sys
import subprocess
from setuptools import setup, find_packages
from setuptools.command.install import install
from setuptools.command.develop import develop


def read_requirements(filename):
    """Read requirements from file."""
    with open(filename, 'r') as f:
        return [line.strip() for line in f if line.strip() and not line.startswith('#')]


def check_system_requirements():
    """Check if system meets requirements."""
    print("Checking system requirements...")

    if sys.version_info < (3, 9):
        print("ERROR: Python 3.9 or higher is required")
        return False

    print(f"✓ Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")
    return True


def install_requirements():
    """Install required packages."""
    print("Installing required packages...")

    try:
        subprocess.check_call([sys.executable, "-m", "pip", "install", "-r", "requirements.txt"])
        print("✓ Requirements installed successfully")
        return True
    except subprocess.CalledProcessError as e:
        print(f"ERROR: Failed to install requirements: {e}")
        return False


def create_directories():
    """Create necessary directories."""
    print("Creating directories...")

    directories = [
        "data",
        "data/configs",
        "data/evidence",
        "logs",
    ]

    for directory in directories:
        os.makedirs(directory, exist_ok=True)
        print(f"✓ Created directory: {directory}")


class CustomInstall(install):
    """Custom install command."""

    def run(self):
        """Run custom installation."""
        if not check_system_requirements():
            sys.exit(1)

        install.run(self)
        create_directories()


class CustomDevelop(develop):
    """Custom develop command."""

    def run(self):
        """Run custom development installation."""
        if not check_system_requirements():
            sys.exit(1)

        develop.run(self)
        create_directories()


def read_readme():
    """Read README file."""
    try:
        with open("README.md", "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return "Behavioral risk scoring, identity verification and evidence capture for proctored exams"


setup(
    name="proctor-risk-engine",
    version="1.0.0",
    author="Proctor Risk Engine Team",
    description="Behavioral risk scoring, identity verification and evidence capture for proctored exams",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["proctor_risk", "proctor_risk.*"]),
    py_modules=["main", "web_server"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Image Processing",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.9",
    install_requires=read_requirements("requirements.txt"),
    extras_require={
        "dev": [
            "pytest>=7.4.2",
            "black>=23.9.1",
            "flake8>=6.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "proctor-risk=main:main",
            "proctor-risk-server=web_server:main",
        ],
    },
    include_package_data=True,
    package_data={
        "": ["*.md", "*.txt", "*.json"],
    },
    cmdclass={
        "install": CustomInstall,
        "develop": CustomDevelop,
    },
    keywords=[
        "proctoring",
        "risk-scoring",
        "computer-vision",
        "face-mesh",
        "gaze-estimation",
        "voice-activity",
        "identity-verification",
        "evidence-capture",
    ],
)


if __name__ == "__main__":
    if len(sys.argv) == 1:
        print("Installing Proctoring Risk Engine...")

        if not check_system_requirements():
            sys.exit(1)

        if not install_requirements():
            sys.exit(1)

        create_directories()
        print("\nTo run the application:")
        print("  python main.py          # Webcam session")
        print("  python web_server.py    # Feature ingest API")
