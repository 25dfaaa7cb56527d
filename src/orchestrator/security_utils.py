"""
Input validation for values that end up inside remote shell commands.

Every name, id or path that is interpolated into a command string executed
over SSH passes through one of these helpers first.
"""
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

DOCKER_ID_PATTERN = re.compile(r'^[a-fA-F0-9]{1,64}$')
CONTAINER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,254}$')
IMAGE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_./:-]*$')
IMAGE_NAME_MAX_LEN = 255
TAG_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]{1,128}$')
IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')


class SecurityError(ValueError):
    """Security validation failed."""
    pass


def validate_identifier(value: str, description: str = "identifier") -> str:
    """
    Validate a host or job identifier.

    Identifiers must:
    - Only contain alphanumeric, dots, dashes, underscores
    - Not contain path separators or path traversal
    - Be between 1 and 200 characters

    Args:
        value: Identifier to validate
        description: Description for error messages

    Returns:
        The validated identifier

    Raises:
        SecurityError: If the identifier is invalid

    Example:
        >>> validate_identifier("web-01", "host ID")
        'web-01'
    """
    if not value:
        raise SecurityError(f"Empty {description}")

    if len(value) > 200:
        raise SecurityError(f"{description} too long (max 200 chars): {value}")

    if not IDENTIFIER_PATTERN.match(value):
        raise SecurityError(
            f"Invalid {description} format: {value}\n"
            f"Only alphanumeric, dots, dashes, and underscores allowed"
        )

    if '..' in value:
        raise SecurityError(f"{description} cannot contain '..': {value}")

    return value


def normalize_container_name(name: str) -> str:
    """Strip whitespace and the leading slash docker prints for names."""
    return name.strip().lstrip('/')


def validate_container_name(name: str) -> str:
    """
    Validate a container name before it is used in a command.

    A leading slash (as printed by ``docker inspect``) is removed.

    Raises:
        SecurityError: If the name contains anything docker would not accept
    """
    if not isinstance(name, str) or not name.strip():
        raise SecurityError("Container name is required")

    normalized = normalize_container_name(name)
    if not CONTAINER_NAME_PATTERN.match(normalized):
        raise SecurityError(f"Invalid container name format: {name!r}")
    return normalized


def validate_docker_id(value: str, description: str = "container ID") -> str:
    """Validate a container or image id (hex, 1-64 chars)."""
    if not isinstance(value, str) or not value.strip():
        raise SecurityError(f"Invalid {description}")
    trimmed = value.strip()
    if not DOCKER_ID_PATTERN.match(trimmed):
        raise SecurityError(f"Invalid {description} format: {value!r}")
    return trimmed


def validate_image_name(name: str) -> str:
    """Validate an image repository name (``repo/name`` or ``name``)."""
    if not isinstance(name, str) or not name.strip():
        raise SecurityError("Image name is required")
    trimmed = name.strip()
    if len(trimmed) > IMAGE_NAME_MAX_LEN:
        raise SecurityError(f"Image name too long (max {IMAGE_NAME_MAX_LEN} chars)")
    if not IMAGE_NAME_PATTERN.match(trimmed):
        raise SecurityError(f"Invalid image name format: {name!r}")
    return trimmed


def validate_tag(tag: str) -> str:
    """Validate an image tag. An empty tag means ``latest``."""
    if tag is None or tag == '':
        return 'latest'
    t = str(tag).strip()
    if not TAG_PATTERN.match(t):
        raise SecurityError(f"Invalid tag format: {tag!r}")
    return t


def quote_arg(arg) -> str:
    """
    Quote a value as a single shell argument.

    The value is wrapped in single quotes and embedded single quotes are
    closed, escaped and reopened.

    Example:
        >>> quote_arg("web app")
        "'web app'"
    """
    if arg is None:
        return "''"
    return "'" + str(arg).replace("'", "'\\''") + "'"


def validate_key_path(path: str) -> Path:
    """
    Validate the path of a private key file referenced from the host list.

    Checks for null bytes, shell metacharacters and path traversal. The file
    itself is not opened here.

    Raises:
        SecurityError: If the path is unsafe
    """
    if not path:
        raise SecurityError("Empty key file path")

    if '\0' in path:
        raise SecurityError(f"Null byte in key file path: {path!r}")

    for char in (';', '&', '|', '$', '`', '\n', '\r'):
        if char in path:
            raise SecurityError(f"Suspicious character {char!r} in key file path: {path}")

    p = Path(path).expanduser()
    if '..' in p.parts:
        raise SecurityError(f"Path traversal detected in key file path: {path}")

    logger.debug(f"Validated key file path: {p}")
    return p
