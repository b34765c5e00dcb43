from setuptools import setup


setup(
    name="data-alchemist",
    version="0.3.0",
    description="Validate, filter and export messy client, worker and task spreadsheets",
    packages=["data_alchemist"],
    python_requires=">=3.9",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "requests",
    ],
    extras_require={
        "excel-legacy": ["xlrd"],
        "all": ["xlrd"],
    },
    entry_points={
        "console_scripts": [
            "data-alchemist=data_alchemist.cli:main",
        ]
    },
)
