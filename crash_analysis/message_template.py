"""
Crash Triage Message Templater

Converts a raw error message into a grouping template by replacing volatile
substrings (numbers, addresses, quoted values) with fixed placeholders.
"""

import re
import logging
from typing import Callable, Dict, List, Optional, Pattern, Tuple, Union


logger = logging.getLogger("triage.message_template")

# (placeholder, pattern) pairs; earlier rules win when matches start at the same place.
# A callable placeholder receives the matched text. Quotes only open a string
# at a word boundary, so contractions such as "can't" stay literal.
ADDRESS_RULE = ("[ADDRESS]", r"0x[0-9a-fA-F]+")
STRING_RULE = ("[STRING]", r"(?<!\w)'(?:[^'\\]|\\.)*'|(?<!\w)\"(?:[^\"\\]|\\.)*\"")
QUOTED_IDENTIFIER_RULE = (lambda quoted: quoted[0] + "[STRING]" + quoted[-1],
                          r"(?<!\w)'(?:[^'\\]|\\.)*'|(?<!\w)\"(?:[^\"\\]|\\.)*\"|`[^`]*`")
NUMBER_RULE = ("[NUMBER]", r"\b\d+(?:\.\d+)?\b")

GENERIC_RULES = [ADDRESS_RULE, STRING_RULE, NUMBER_RULE]

# Database drivers put useful literal text in their messages; only the quoted
# identifiers vary between occurrences.
DATABASE_RULES = [QUOTED_IDENTIFIER_RULE]

Placeholder = Union[str, Callable[[str], str]]
Rule = Tuple[Placeholder, str]

MESSAGE_FILTERS: Dict[str, List[Rule]] = {
    "Mysql::Error": DATABASE_RULES,
    "Mysql2::Error": DATABASE_RULES,
    "PG::Error": DATABASE_RULES,
    "ActiveRecord::StatementInvalid": DATABASE_RULES,
    "sqlite3.OperationalError": DATABASE_RULES,
    "sqlite3.IntegrityError": DATABASE_RULES,
    "MySQLdb.OperationalError": DATABASE_RULES,
    "MySQLdb.IntegrityError": DATABASE_RULES,
    "psycopg2.errors.": DATABASE_RULES,
    "django.db.utils.": DATABASE_RULES,
    "sqlalchemy.exc.": DATABASE_RULES,
}


def _compile(rules: List[Rule]) -> Tuple[Pattern, List[Placeholder]]:
    parts = [f"(?P<r{i}>{pattern})" for i, (_, pattern) in enumerate(rules)]
    return re.compile("|".join(parts)), [placeholder for placeholder, _ in rules]


class MessageTemplater:
    """
    Applies substitution rules in a single pass so that inserted placeholders
    are never rewritten by a later rule.
    """

    def __init__(self,
                 generic_rules: List[Rule] = None,
                 filters: Dict[str, List[Rule]] = None):
        self._generic = _compile(generic_rules or GENERIC_RULES)
        self._filters = {
            name: _compile(rules)
            for name, rules in (MESSAGE_FILTERS if filters is None else filters).items()
        }

    def rules_for(self, class_name: Optional[str]) -> Tuple[Pattern, List[Placeholder]]:
        """Class-specific rules first (exact, then namespace prefix), else the generic set."""
        if class_name:
            if class_name in self._filters:
                return self._filters[class_name]
            prefixes = [name for name in self._filters
                        if name.endswith((".", "::")) and class_name.startswith(name)]
            if prefixes:
                return self._filters[max(prefixes, key=len)]
        return self._generic

    def template(self, class_name: Optional[str], message: Optional[str]) -> Optional[str]:
        if message is None:
            return None

        pattern, placeholders = self.rules_for(class_name)

        def substitute(match):
            placeholder = placeholders[int(match.lastgroup[1:])]
            return placeholder(match.group()) if callable(placeholder) else placeholder

        return pattern.sub(substitute, message)
