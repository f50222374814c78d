"""Parsing of captured task output."""

import json

import yaml

from opflow.exceptions import MalformedModel, ValidationError
from opflow.model import validate_tree
from opflow.proc import OUTPUT_FORMATS


def parse_output(text: str, fmt: str):
    """Parse a task's standard output.

    Args:
        text: Captured stdout
        fmt: ``json``, ``yaml`` or ``text``

    Returns:
        Parsed data; ``text`` gives the output without its trailing newline.
        Empty output parses to None for json and yaml.

    Raises:
        ValidationError: If the output is not valid for the format, or holds
            values a scope cannot address (YAML dates, non-string keys).
    """
    if fmt not in OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format: {fmt}")
    if fmt == 'text':
        return text.rstrip('\n')
    if not text.strip():
        return None
    try:
        if fmt == 'json':
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Output is not valid {fmt}: {e}") from e
    try:
        validate_tree(data)
    except MalformedModel as e:
        raise ValidationError(f"Output is not valid {fmt}: {e}") from e
    return data
