# Copyright Red Hat
#
# fsintegrity/difftypes.py - File integrity checker change types
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Change status types
"""
from enum import Enum


class ChangeStatus(Enum):
    """
    Enum for the status of a detected change.
    """

    ADDED = "added"
    CHANGED = "changed"
    DELETED = "deleted"
