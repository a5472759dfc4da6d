"""
Submission validation utilities.

Checks applied to plaintext submissions before they are encoded, plus a
reader for marker files supplied by path.
"""

import gzip
from pathlib import Path

from chronogenomics.models import Submission


def validate_submission(submission: Submission) -> None:
    """Validate a plaintext submission.

    Args:
        submission: The submission to check

    Raises:
        ValueError: If the marker sequence or metadata is blank
    """
    if not submission.dna_sequence.strip():
        raise ValueError("DNA marker sequence is empty")

    if not submission.lifestyle.strip():
        raise ValueError("Lifestyle must not be blank")

    if not submission.age_range.strip():
        raise ValueError("Age range must not be blank")


def read_payload_file(payload_file_path: str) -> str:
    """Read a marker file after basic accessibility checks.

    Plain and gzip-compressed (``.gz``) files are supported.

    Args:
        payload_file_path: Path to the marker file

    Returns:
        The file's text content with surrounding whitespace removed

    Raises:
        FileNotFoundError: If the file doesn't exist
        PermissionError: If the file isn't readable
        ValueError: If the path is not a file, or the file is empty or unreadable
    """
    payload_path = Path(payload_file_path)

    if not payload_path.exists():
        raise FileNotFoundError(f"Marker file not found: {payload_file_path}")

    if not payload_path.is_file():
        raise ValueError(f"Path is not a file: {payload_file_path}")

    if payload_path.stat().st_size == 0:
        raise ValueError(f"Marker file is empty: {payload_file_path}")

    try:
        if payload_file_path.endswith('.gz'):
            with gzip.open(payload_file_path, 'rt') as f:
                content = f.read()
        else:
            with open(payload_file_path, 'r') as f:
                content = f.read()
    except PermissionError:
        raise PermissionError(f"Permission denied reading marker file: {payload_file_path}")
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"Cannot read marker file: {e}")

    if not content.strip():
        raise ValueError(f"Marker file is empty: {payload_file_path}")
    return content.strip()
