#!/usr/bin/env python
# encoding: utf8
"""Adapted from virtualenv's setup.py.
"""

import os
import re

from setuptools import setup


here = os.path.dirname(os.path.abspath(__file__))

# Figure out the version
version_re = re.compile(
    r'__version__ = (\(.*?\))')
with open(os.path.join(here, 'snapkeeper/__init__.py')) as fp:
    for line in fp:
        match = version_re.search(line)
        if match:
            version = ".".join(map(str, eval(match.group(1))))
            break
    else:
        raise Exception("Cannot find version in __init__.py")

setup(name='snapkeeper',
      version=version,
      description="Prunes a directory of backups by generations",
      classifiers=[
        'License :: OSI Approved :: BSD License',
        'Programming Language :: Python :: 3'
      ],
      license='BSD',
      packages=['snapkeeper'],
      python_requires='>=3.6',
      install_requires=['pyyaml>=3.09', 'python-dateutil>=2.4.0',
                        'rich>=10.0'],
      extras_require={'test': ['pytest']},
      entry_points="""[console_scripts]\nsnapkeeper = snapkeeper.script:run\n""",
      zip_safe=False,
)
