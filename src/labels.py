# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Label expressions, template matching and pod marker labels."""

import logging
import re
import typing
from dataclasses import dataclass

import state

# Every pod managed by the provisioner carries this label.
DEFAULT_POD_LABELS = {"jenkins": "slave"}
# Marker of pods whose template has no labels.
DEFAULT_ID = "jenkins/slave-default"
LABEL_ID_PREFIX = "jenkins/"

_TOKEN = re.compile(r'\s*(<->|->|&&|\|\||!|\(|\)|"[^"]*"|(?:[^\s!&|()<>"-]|-(?!>))+)')

logger = logging.getLogger(__name__)

Predicate = typing.Callable[[typing.AbstractSet[str]], bool]


class LabelExpressionError(ValueError):
    """Represents a malformed label expression."""


def _tokenize(expression: str) -> typing.List[str]:
    """Split a label expression into operator and atom tokens.

    Args:
        expression: The label expression.

    Raises:
        LabelExpressionError: if the expression contains an unexpected character.

    Returns:
        The tokens in order.
    """
    tokens = []
    position = 0
    expression = expression.rstrip()
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if not match:
            raise LabelExpressionError(
                f"Unexpected character at {position} in label expression {expression!r}"
            )
        tokens.append(match.group(1))
        position = match.end()
    return tokens


class _Parser:
    """Recursive descent parser over label expression tokens.

    Precedence from loosest to tightest: <->, ->, ||, &&, !.
    """

    def __init__(self, tokens: typing.List[str], expression: str):
        """Initialize the parser.

        Args:
            tokens: The expression tokens.
            expression: The source expression, for error messages.
        """
        self.tokens = tokens
        self.expression = expression
        self.position = 0
        self.atoms: typing.List[str] = []

    def _peek(self) -> typing.Optional[str]:
        return self.tokens[self.position] if self.position < len(self.tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise LabelExpressionError(f"Unexpected end of label expression {self.expression!r}")
        self.position += 1
        return token

    def parse(self) -> Predicate:
        predicate = self._iff()
        if self._peek() is not None:
            raise LabelExpressionError(
                f"Unexpected token {self._peek()!r} in label expression {self.expression!r}"
            )
        return predicate

    def _iff(self) -> Predicate:
        left = self._implies()
        while self._peek() == "<->":
            self._next()
            right = self._implies()
            left = (lambda a, b: lambda labels: a(labels) == b(labels))(left, right)
        return left

    def _implies(self) -> Predicate:
        left = self._or()
        while self._peek() == "->":
            self._next()
            right = self._or()
            left = (lambda a, b: lambda labels: not a(labels) or b(labels))(left, right)
        return left

    def _or(self) -> Predicate:
        left = self._and()
        while self._peek() == "||":
            self._next()
            right = self._and()
            left = (lambda a, b: lambda labels: a(labels) or b(labels))(left, right)
        return left

    def _and(self) -> Predicate:
        left = self._not()
        while self._peek() == "&&":
            self._next()
            right = self._not()
            left = (lambda a, b: lambda labels: a(labels) and b(labels))(left, right)
        return left

    def _not(self) -> Predicate:
        if self._peek() == "!":
            self._next()
            operand = self._not()
            return lambda labels: not operand(labels)
        return self._primary()

    def _primary(self) -> Predicate:
        token = self._next()
        if token == "(":
            inner = self._iff()
            if self._next() != ")":
                raise LabelExpressionError(
                    f"Missing closing parenthesis in label expression {self.expression!r}"
                )
            return inner
        if token in ("<->", "->", "&&", "||", ")"):
            raise LabelExpressionError(
                f"Unexpected operator {token!r} in label expression {self.expression!r}"
            )
        atom = token[1:-1] if token.startswith('"') else token
        self.atoms.append(atom)
        return lambda labels: atom in labels


@dataclass(frozen=True)
class Label:
    """A requested label expression.

    Attrs:
        name: The expression as written.
        atoms: The label atoms referenced by the expression.
        predicate: Evaluates the expression against a label set.
    """

    name: str
    atoms: typing.Tuple[str, ...]
    predicate: Predicate

    def matches(self, label_set: typing.Iterable[str]) -> bool:
        """Check whether a label set satisfies the expression.

        Args:
            label_set: The label atoms of an agent or template.

        Returns:
            True if the expression accepts the label set.
        """
        return self.predicate(frozenset(label_set))

    def __str__(self) -> str:
        """Return the expression as written."""
        return self.name


def parse(expression: str) -> Label:
    """Parse a label expression.

    Args:
        expression: The expression, e.g. "linux && (java || maven)".

    Raises:
        LabelExpressionError: if the expression is malformed.

    Returns:
        The parsed label.
    """
    tokens = _tokenize(expression)
    if not tokens:
        raise LabelExpressionError("Empty label expression")
    parser = _Parser(tokens, expression)
    predicate = parser.parse()
    return Label(name=expression.strip(), atoms=tuple(parser.atoms), predicate=predicate)


def get_id_for_label(atom: typing.Optional[str]) -> str:
    """Get the marker label key of a label atom.

    Args:
        atom: The label atom, None for unlabeled templates.

    Returns:
        The marker label key.
    """
    return DEFAULT_ID if atom is None else f"{LABEL_ID_PREFIX}{atom}"


def get_labels_map(label_set: typing.Iterable[str]) -> typing.Dict[str, str]:
    """Get the marker labels carried by the pods of a template.

    The same labels select the pods counted against the template instance cap.

    Args:
        label_set: The template label atoms.

    Returns:
        The default pod labels plus one marker per atom, or the default marker when there are
        no atoms.
    """
    labels = dict(DEFAULT_POD_LABELS)
    atoms = sorted(set(label_set))
    if not atoms:
        labels[get_id_for_label(None)] = "true"
    for atom in atoms:
        labels[get_id_for_label(atom)] = "true"
    return labels


def get_matching_templates(
    label: typing.Optional[Label], templates: typing.Sequence[state.AgentTemplate]
) -> typing.List[state.AgentTemplate]:
    """Get the templates able to serve a label, in declaration order.

    Args:
        label: The requested label, None for unlabeled work.
        templates: The cloud templates.

    Returns:
        The matching templates. Unlabeled work only matches templates in NORMAL mode.
    """
    matching = [
        template
        for template in templates
        if (label is None and template.node_usage_mode == state.NodeUsageMode.NORMAL)
        or (label is not None and label.matches(template.label_set))
    ]
    logger.debug(
        "Templates matching label %s: %s", label, [template.name for template in matching]
    )
    return matching
