import re
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Pattern, Tuple
from urllib.parse import unquote_plus

from schemas import InboundRequest, Severity

# Longest slice of any single field that is scanned
MAX_FIELD_LENGTH = 4096


class ThreatHit(NamedTuple):
    category: str
    signature: str


class ThreatRule(NamedTuple):
    category: str
    severity: Severity
    fields: Tuple[str, ...]  # any of: path, query, user_agent, referer
    patterns: Tuple[Pattern, ...]


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# =========================
# Signature table
# =========================
# Ordered per category; the first matching pattern is reported.
# Every pattern is linear: no nested quantifiers, bounded repetitions.

DEFAULT_RULES: Tuple[ThreatRule, ...] = (
    ThreatRule(
        "injection-sql", Severity.CRITICAL, ("path", "query", "referer"),
        _compile(
            r"\bunion\b[\s/*+]{1,20}(?:all[\s/*+]{1,20})?select\b",
            r"'\s{0,10}(?:or|and)\s{1,10}'?\w{1,20}'?\s{0,10}=\s{0,10}'?\w{1,20}",
            r";\s{0,10}(?:drop|truncate|alter)\s{1,10}(?:table|database)\b",
            r"\b(?:sleep|benchmark|pg_sleep)\s{0,10}\(\s{0,10}\d",
            r"\bwaitfor\s{1,10}delay\b",
            r"\binformation_schema\b",
            r"['\"]\s{0,10}(?:--|#|/\*)",
        ),
    ),
    ThreatRule(
        "injection-command", Severity.CRITICAL, ("path", "query", "referer"),
        _compile(
            r"(?:;|\|\|?|&&)\s{0,10}(?:cat|ls|id|whoami|uname|wget|curl|nc|bash|sh|python|perl|rm|chmod)(?=\s|$|[;|&<>])",
            r"`[^`]{1,200}`",
            r"\$\([^)]{1,200}\)",
            r"(?:/bin/(?:ba)?sh|cmd\.exe|powershell(?:\.exe)?)\b",
        ),
    ),
    ThreatRule(
        "xss", Severity.HIGH, ("path", "query", "referer"),
        _compile(
            r"<\s{0,10}script\b",
            r"\bjavascript\s{0,10}:",
            r"\bon(?:error|load|mouseover|focus|click)\s{0,10}=",
            r"<\s{0,10}(?:iframe|svg|img|object|embed)\b",
            r"\bdocument\.(?:cookie|location)\b",
        ),
    ),
    ThreatRule(
        "path-traversal", Severity.HIGH, ("path", "query"),
        _compile(
            r"\.\./",
            r"\.\.\\",
            r"\.\.%2f",
            r"%2e%2e(?:%2f|/|%5c)",
            r"%252e%252e",
            r"/etc/(?:passwd|shadow)\b",
        ),
    ),
    ThreatRule(
        "sensitive-path-probe", Severity.MEDIUM, ("path",),
        _compile(
            r"/(?:\.env|\.git|\.svn|\.htaccess|wp-admin|wp-login\.php|phpmyadmin|node_modules|server-status)(?:/|$)",
            r"/(?:admin|config|database|backup)(?:/|\.|$)",
        ),
    ),
    ThreatRule(
        "scanner-useragent", Severity.MEDIUM, ("user_agent",),
        _compile(
            r"\b(?:sqlmap|nmap|nikto|dirbuster|dirb|gobuster|masscan|wpscan|nuclei|zgrab|acunetix|havij)\b",
        ),
    ),
)


class ThreatDetector:
    """
    Classifies a request against attack signatures using URL and header data
    only. Pure: no I/O, no state, same input gives the same output.
    """

    def __init__(self, rules: Iterable[ThreatRule] = DEFAULT_RULES):
        self.rules: Tuple[ThreatRule, ...] = tuple(rules)
        self.severities: Dict[str, Severity] = {r.category: r.severity for r in self.rules}

    def severity(self, category: str) -> Severity:
        return self.severities.get(category, Severity.LOW)

    def classify(self, request: InboundRequest) -> FrozenSet[ThreatHit]:
        fields = _fields(request)
        hits = set()

        for rule in self.rules:
            values = [v for name in rule.fields for v in fields.get(name, ())]
            if not values:
                continue
            for pattern in rule.patterns:
                if any(pattern.search(v) for v in values):
                    hits.add(ThreatHit(rule.category, pattern.pattern))
                    break

        return frozenset(hits)


def _variants(value: str) -> List[str]:
    value = value[:MAX_FIELD_LENGTH]
    decoded = unquote_plus(value)
    return [value] if decoded == value else [value, decoded]


def _fields(request: InboundRequest) -> Dict[str, List[str]]:
    query_values: List[str] = []
    for key, value in request.query.items():
        query_values.extend(_variants(key))
        query_values.extend(_variants(value))

    return {
        "path": _variants(request.path),
        "query": query_values,
        "user_agent": _variants(request.header("user-agent") or ""),
        "referer": _variants(request.header("referer") or ""),
    }
