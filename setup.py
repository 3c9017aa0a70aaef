"""
Setup script for the Hydrogen Credit Registry
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="hydrogen-credit-registry",
    version="1.0.0",
    description="Issue, price, trade and retire green hydrogen credits",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["h2_registry", "h2_registry.*"]),
    package_data={
        "h2_registry": ["static/descriptions/*.md", "static/templates/*.jinja"],
    },
    include_package_data=True,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "httpx"],
    },
)
