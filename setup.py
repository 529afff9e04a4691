import re

from setuptools import setup

# The module imports its dependencies; read the metadata without importing.
with open("kouchctl.py", "r", encoding="utf-8") as infile:
    source = infile.read()
version = re.search(r'^__version__ = "([^"]+)"', source, re.M).group(1)
description = re.search(r'^"""(.+)$', source, re.M).group(1)


setup(name="kouchctl",
      version=version,
      description=description,
      long_description=open("README.md", "r", encoding="utf-8").read(),
      long_description_content_type="text/markdown",
      license="MIT",
      python_requires=">= 3.8",
      py_modules=["kouchctl"],
      install_requires=[
          "requests>=2",
          "PyYAML>=5.1",
          "Jinja2>=3",
      ],
      entry_points={
          "console_scripts": ["kouchctl=kouchctl:main",
                              "kivik=kouchctl:main"]
      },
      classifiers=[
          "License :: OSI Approved :: MIT License",
          "Intended Audience :: Developers",
          "Intended Audience :: System Administrators",
          "Natural Language :: English",
          "Development Status :: 3 - Alpha",
          "Programming Language :: Python :: 3 :: Only",
          "Programming Language :: Python :: 3.8",
          "Operating System :: OS Independent",
          "Environment :: Console",
          "Topic :: Database :: Front-Ends",
          "Topic :: Software Development :: Libraries :: Python Modules"
      ],
)
