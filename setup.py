from setuptools import setup, find_packages
from pathlib import Path
import sys

# Check Python version requirement
if sys.version_info < (3, 11):
    raise RuntimeError("FtpLink requires Python 3.11 or newer")

setup(
    name="FtpLink",
    version="1.0.0",
    author="Andrew Hernandez",
    author_email="andromedeyz@hotmail.com",
    description="An async FTP/FTPS client protocol engine for Python with passive and active data connections, TLS policies and progress reporting.",
    long_description=(
        open("README.md", "r", encoding="utf-8").read()
        if Path("README.md").exists()
        else "FtpLink speaks FTP itself: control and data connections, EPSV/PASV and EPRT/PORT negotiation, explicit and implicit FTPS with PROT P, and transfers with progress reporting and cancellation, all on asyncio."
    ),
    long_description_content_type="text/markdown",
    url="http://github.com/ApaxPhoenix/FtpLink",
    project_urls={
        "Bug Tracker": "http://github.com/ApaxPhoenix/FtpLink/issues",
        "Source Code": "http://github.com/ApaxPhoenix/FtpLink",
    },
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Framework :: AsyncIO",
        "Topic :: Internet :: File Transfer Protocol (FTP)",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.11",
    install_requires=[
        "aioftp>=0.24.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "trustme>=1.0",
        ],
    },
    keywords="ftp, ftps, async, file transfer, networking, ssl, tls, client",
    license="MIT",
    zip_safe=False,
)
