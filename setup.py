from setuptools import setup

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="lnr-reader",
    version="0.1.0",
    description="Terminal/CLI light novel Epub reader with resumable position",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    keywords=["EPUB", "CLI", "Terminal", "Reader", "Light Novel"],
    install_requires=["windows-curses;platform_system=='Windows'"],
    extras_require={"test": ["pytest"]},
    python_requires="~=3.7",
    py_modules=["lnr"],
    entry_points={ "console_scripts": ["lnr=lnr:main"] },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ]
)
