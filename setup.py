# This should be only one line. If it must be multi-line, indent the second
# line onwards to keep the PKG-INFO file format intact.
"""Encrypted secrets and watchdog-protected deployments for a fleet of \
machines.
"""

from setuptools import find_packages, setup

version = open("src/fleet/version.txt").read().strip()

setup(
    name="fleet",
    version=version,
    install_requires=[
        "ConfigUpdater",
        "Jinja2",
        "requests",
        # ConfigUpdater does not manage its minimum requirements correctly.
        "setuptools>=38.3",
        "execnet>=1.8.1",
        "importlib_metadata",
        "py",
        "pyrage",
        "cryptography",
        'remote-pdb', ],
    extras_require={
        "test": [
            "mock",
            "pytest",
            "pytest-coverage",
            "pytest-instafail",
            "pytest-timeout", ]},
    entry_points="""
        [console_scripts]
            fleet = fleet.main:main
            fleet-agent = fleet.remote_core:agent_main
    """,
    license="BSD (2-clause)",
    keywords="deployment secrets age rollback",
    classifiers="""\
License :: OSI Approved :: BSD License
Programming Language :: Python
Programming Language :: Python :: 3
Programming Language :: Python :: 3.8
Programming Language :: Python :: 3.9
Programming Language :: Python :: 3.10
Programming Language :: Python :: 3.11
Programming Language :: Python :: 3.12
Programming Language :: Python :: 3 :: Only
"""[:-1].split("\n"),
    description=__doc__.strip(),
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"fleet": ["version.txt"]},
    include_package_data=True,
    zip_safe=False,
    test_suite="fleet.tests",
    python_requires=">=3.8")
