#!/usr/bin/env python

import sys

from setuptools import setup

INSTALL_REQUIRES = []
INSTALL_REQUIRES.append('urllib3>=2.0')  # connection pooling, HTTPHeaderDict
assert sys.version_info >= (3, 8), "We only support Python 3.8+"

with open('README.rst') as f:
  readme = f.read()

setup(name='dropboxapi',
      version='1.0.0',
      description='Client library for the Dropbox HTTP API v2',
      long_description=readme,
      long_description_content_type='text/x-rst',
      packages=['dropboxapi'],
      install_requires=INSTALL_REQUIRES,
      extras_require={'test': ['pytest']},
      python_requires='>=3.8',
     )
