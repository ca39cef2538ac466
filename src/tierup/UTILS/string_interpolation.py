"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?message} and the $$ escape.
    """
    # Group 1: escaped $$
    # Group 2: braced VAR name, group 3: modifier, group 4: modifier argument
    # Group 5: bare $VAR name
    PATTERN = re.compile(
        r'(\$\$)'
        r'|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}'
        r'|\$([A-Za-z_][A-Za-z0-9_]*)'
    )

    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        Unset variables without a default resolve to an empty string, as Compose does.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises KeyError: If a ${VAR:?message} or ${VAR?message} variable is missing.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            if match.group(1):
                return '$'

            var_name = match.group(2) or match.group(5)
            modifier = match.group(3)
            alt_value = match.group(4) or ''

            value = context.get(var_name)
            # With a leading colon, an empty value counts as unset
            is_set = bool(value) if modifier and modifier.startswith(':') else value is not None

            if modifier in (':-', '-'):
                return value if is_set else alt_value
            if modifier in (':+', '+'):
                return alt_value if is_set else ''
            if modifier in (':?', '?'):
                if not is_set:
                    raise KeyError(alt_value or f"Variable {var_name} is required")
                return value

            if value is None:
                logger.warning("Variable %s is not set, defaulting to a blank string", var_name)
                return ''
            return value

        return EnvironmentInterpolator.PATTERN.sub(replace, template)
