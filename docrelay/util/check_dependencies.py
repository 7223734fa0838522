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

"""
This module exposes a single function which checks docrelay's dependencies are
present and correctly versioned. The requirement specifiers are the ones
declared in `docrelay.python_dependencies`; installed versions are read with
`importlib.metadata`.
"""

import logging
from importlib import metadata
from typing import Iterable, List, Optional

from packaging.requirements import Requirement

from docrelay import __version__, python_dependencies

logger = logging.getLogger(__name__)

__all__ = ["DependencyException", "check_requirements"]


class DependencyException(Exception):
    @property
    def message(self) -> str:
        return "\n".join(
            [
                "Missing Requirements: %s" % (", ".join(self.dependencies),),
                "To install run:",
                "    pip install --upgrade --force %s" % (" ".join(self.dependencies),),
                "",
            ]
        )

    @property
    def dependencies(self) -> Iterable[str]:
        for i in self.args[0]:
            yield '"' + i + '"'


def _not_installed(requirement: Requirement, extra: Optional[str] = None) -> str:
    if extra:
        return "docrelay %s needs %s for %s, but it is not installed" % (
            __version__,
            requirement.name,
            extra,
        )
    return "docrelay %s needs %s, but it is not installed" % (
        __version__,
        requirement.name,
    )


def _incorrect_version(
    requirement: Requirement, got: str, extra: Optional[str] = None
) -> str:
    needed = str(requirement)
    if extra:
        needed = "%s for %s" % (needed, extra)
    return "docrelay %s needs %s, but got %s==%s" % (
        __version__,
        needed,
        requirement.name,
        got,
    )


def check_requirements(extra: Optional[str] = None) -> None:
    """Check docrelay's dependencies are present and correctly versioned.

    If `extra` is None, every mandatory dependency must be installed at a
    matching version, and every optional dependency that is installed must
    match too. Otherwise the dependencies of that extra (eg "tls") must be
    installed at a matching version.

    Raises:
        DependencyException: if a dependency is missing or incorrectly versioned.
        ValueError: if there is no such extra.
    """
    if extra is None:
        mandatory = python_dependencies.REQUIREMENTS
        optional = sorted(python_dependencies.ALL_OPTIONAL_REQUIREMENTS)
    elif extra in python_dependencies.CONDITIONAL_REQUIREMENTS:
        mandatory = python_dependencies.CONDITIONAL_REQUIREMENTS[extra]
        optional = []
    else:
        raise ValueError("docrelay does not provide the feature '%s'" % (extra,))

    deps_unfulfilled = []  # type: List[str]
    errors = []  # type: List[str]

    dependencies = [(d, True) for d in mandatory] + [(d, False) for d in optional]
    for raw_requirement, must_be_installed in dependencies:
        requirement = Requirement(raw_requirement)
        try:
            version = metadata.version(requirement.name)
        except metadata.PackageNotFoundError:
            if must_be_installed:
                deps_unfulfilled.append(raw_requirement)
                errors.append(_not_installed(requirement, extra))
            continue

        # prereleases such as RCs are allowed
        if not requirement.specifier.contains(version, prereleases=True):
            deps_unfulfilled.append(raw_requirement)
            errors.append(_incorrect_version(requirement, version, extra))

    if deps_unfulfilled:
        for err in errors:
            logger.error(err)

        raise DependencyException(deps_unfulfilled)
