"""Shared pydantic configuration: snake_case in Python, camelCase on the wire."""

from pydantic.alias_generators import to_camel

CAMEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "from_attributes": True,
}
