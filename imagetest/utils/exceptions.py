# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Match image names against lists of per-distro, per-version exceptions."""

import enum
import logging
import re
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

IMAGE_UBUNTU = "ubuntu.*"
IMAGE_UBUNTU_MINIMAL = "ubuntu-minimal.*"
IMAGE_UBUNTU_NO_MINIMAL = "ubuntu-[0-9]+.*"
IMAGE_COS = "cos.*"
IMAGE_SLES = "sles.*"
IMAGE_DEBIAN = "debian.*"
IMAGE_RHEL = "rhel.*"
IMAGE_RHEL_SAP = "rhel.*sap.*"
IMAGE_ORACLE = "oracle-linux.*"
IMAGE_ROCKY = "rocky-linux.*"
IMAGE_CENTOS = "centos.*"
IMAGE_WINDOWS = "windows.*"
IMAGE_SQL = "sql.*"
IMAGE_ALMALINUX = "almalinux.*"

IMAGE_EL = "(" + "|".join(
    [IMAGE_RHEL, IMAGE_RHEL_SAP, IMAGE_ROCKY, IMAGE_CENTOS, IMAGE_ORACLE, IMAGE_ALMALINUX]
) + ")"
IMAGE_ALL_WINDOWS = "(" + "|".join([IMAGE_WINDOWS, IMAGE_SQL]) + ")"


class ExceptionType(enum.Enum):
    """How an image version is compared with an exception version."""

    EQUAL = "=="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"
    GREATER_THAN_OR_EQUAL_TO = ">="
    LESS_THAN_OR_EQUAL_TO = "<="


@dataclass(eq=True, repr=True, frozen=True)
class ImageException:
    """An image (or image version range) a check does not apply to.

    A version of 0 applies to every version of the matched image. Versions are
    the first numeric dash-separated part of the image name, so "debian-11"
    is 11 and "ubuntu-2204-jammy" is 2204.
    """

    match: str = ""
    version: int = 0
    type: ExceptionType = ExceptionType.EQUAL


def parse_version(image: str) -> int:
    """Return the first integer dash-part of the image base name, or 0."""
    for part in image.rsplit("/", 1)[-1].split("-"):
        if part.isdigit():
            return int(part)
    return 0


def check_exception(version: int, exception: ImageException) -> bool:
    """Compare an image version with the exception threshold."""
    comparisons = {
        ExceptionType.EQUAL: version == exception.version,
        ExceptionType.NOT_EQUAL: version != exception.version,
        ExceptionType.GREATER_THAN: version > exception.version,
        ExceptionType.LESS_THAN: version < exception.version,
        ExceptionType.GREATER_THAN_OR_EQUAL_TO: version >= exception.version,
        ExceptionType.LESS_THAN_OR_EQUAL_TO: version <= exception.version,
    }
    return comparisons[exception.type]


def match_all(image: str, base: str, *exceptions: ImageException) -> bool:
    """True if the image matches base and every exception's version rule.

    The match field of the exceptions is ignored.
    """
    try:
        regex = re.compile(base)
    except re.error as error:
        logger.error("failed to compile regex %r: %r", base, error)
        return False

    image = image.rsplit("/", 1)[-1]
    if not regex.search(image):
        return False

    version = parse_version(image)
    for exception in exceptions:
        if exception.version == 0:
            return True
        if not check_exception(version, exception):
            return False
    return True


def has_match(image: str, exceptions: List[ImageException]) -> bool:
    """True if the image matches any exception."""
    image = image.rsplit("/", 1)[-1]
    version = parse_version(image)
    for exception in exceptions:
        try:
            regex = re.compile(exception.match)
        except re.error as error:
            logger.error("failed to compile regex %r: %r", exception.match, error)
            return False

        if not regex.search(image):
            continue
        if exception.version == 0 or check_exception(version, exception):
            return True
    return False
