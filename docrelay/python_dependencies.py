# Copyright 2026 The docrelay Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import itertools
from typing import Set


# REQUIREMENTS is a simple list of requirement specifiers[1], and must be
# installed. It is passed to setup() as install_requires in setup.py.
#
# CONDITIONAL_REQUIREMENTS is the optional dependencies, represented as a dict
# of lists. The dict key is the optional dependency name and can be passed to
# pip when installing. It is passed to setup() as extras_require in setup.py
#
# This file is exec'd by setup.py, so it must only import the standard library.
#
# [1] https://pip.pypa.io/en/stable/reference/pip_install/#requirement-specifiers.

REQUIREMENTS = [
    # on_setattr hooks arrived in attrs 20.1.0
    "attrs>=20.1.0,!=21.1.0",
    "canonicaljson>=1.4.0",
    "jsonschema>=3.0.0",
    # used to check the installed versions against these specifiers
    "packaging>=16.1",
    "prometheus_client>=0.4.0",
    "pyyaml>=3.11",
    # Twisted 21.2 is needed to await Deferreds from coroutines driven by
    # ensureDeferred without warnings.
    "Twisted>=21.2.0",
    "treq>=15.1",
    "typing-extensions>=3.7.4",
    "zope.interface>=4.4.2",
]

CONDITIONAL_REQUIREMENTS = {
    # TLS connections to https peers.
    "tls": ["pyopenssl>=16.0.0", "service_identity>=18.1.0", "idna>=2.5"],
    "test": ["parameterized>=0.7.0"],
}

ALL_OPTIONAL_REQUIREMENTS = set()  # type: Set[str]

for name, optional_deps in CONDITIONAL_REQUIREMENTS.items():
    # Exclude test as it's a dev-based requirement.
    if name not in ["test"]:
        ALL_OPTIONAL_REQUIREMENTS = set(optional_deps) | ALL_OPTIONAL_REQUIREMENTS


# ensure there are no double-quote characters in any of the deps (otherwise the
# 'pip install' incantation in DependencyException will break)
for dep in itertools.chain(
    REQUIREMENTS,
    *CONDITIONAL_REQUIREMENTS.values(),
):
    if '"' in dep:
        raise Exception(
            "Dependency `%s` contains double-quote; use single-quotes instead" % (dep,)
        )
