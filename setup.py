from setuptools import find_packages, setup

setup(
    name="fleet-rbac-reconcile",
    version="0.1.0",
    license="Apache License 2.0",

    python_requires=">=3.11",
    description="Propagates team RoleBindings from a central cluster to a "
                "selected fleet of remote clusters.",

    packages=find_packages(exclude=('tests',)),

    install_requires=[
        "sretoolbox~=2.5",
        "Click>=7.0,<9.0",
        "toml>=0.10.0,<0.11.0",
        "PyYAML>=6.0,<7.0",
        "urllib3>=1.26,<3.0",
        "prometheus-client>=0.17,<1.0",
        "sentry-sdk>=1.40,<3.0",
        "kubernetes>=28.1,<33.0",
        "pydantic>=2.11,<3.0",
    ],

    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-mock>=3.11",
        ],
    },

    test_suite="tests",

    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
    ],
    entry_points={
        'console_scripts': [
            'fleet-rbac-reconcile = fleet_rbac.cli:integration',
        ],
    },
)
