# app/automata/expressions.py
"""
Язык выражений для guard'ов и действий.

Синтаксис совместим с конфигами вида:

    type == "door" && command == "open"
    !(state == "off") || temp > 25.5
    Log("$name opened")
    StartTimer("kettle_on", 180)

Текст переводится в Python-выражение (&& → and, || → or, ! → not),
разбирается модулем ast и проверяется по белому списку узлов.
Вызывать можно только функции из библиотеки (functions.py).
Имена резолвятся через контекст выполнения; неизвестное имя → None.
"""
from __future__ import annotations

import ast
import re
from typing import Any, Collection, Dict, Iterator, Mapping, Optional

from .types import AutomataError, ExpressionError

# строковые литералы не трогаем, остальное переводим
_TOKENS = re.compile(r'''("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|(&&)|(\|\|)|(!(?!=))''')

_CONSTANTS = {"true": True, "false": False, "nil": None}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn,
    ast.Call, ast.Name, ast.Load, ast.Constant,
    ast.Tuple, ast.List,
)


def _translate(source: str) -> str:
    def _repl(m: "re.Match[str]") -> str:
        if m.group(1):
            return m.group(1)
        if m.group(2):
            return " and "
        if m.group(3):
            return " or "
        return " not "

    return _TOKENS.sub(_repl, source)


class _Constants(ast.NodeTransformer):
    def visit_Name(self, node: ast.Name) -> ast.AST:
        if node.id in _CONSTANTS:
            return ast.copy_location(ast.Constant(value=_CONSTANTS[node.id]), node)
        return node


class Expression:
    """Скомпилированное выражение. Неизменяемо, безопасно для переиспользования."""

    __slots__ = ("source", "_code", "names", "calls")

    def __init__(self, source: str, code: Any, names: frozenset, calls: frozenset) -> None:
        self.source = source
        self._code = code
        self.names = names    # имена, читаемые из контекста
        self.calls = calls    # вызываемые функции библиотеки

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        # scope — отображение имён; builtins закрыты
        return eval(self._code, {"__builtins__": {}}, scope)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


def compile_expression(source: str, functions: Collection[str]) -> Expression:
    """Скомпилировать одно выражение. Ошибка → ExpressionError."""
    text = (source or "").strip()
    if not text:
        raise ExpressionError(source, "empty expression")

    try:
        tree = ast.parse(_translate(text).strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(source, f"syntax error: {e.msg}") from None

    tree = ast.fix_missing_locations(_Constants().visit(tree))

    names = set()
    calls = set()
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(source, f"unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise ExpressionError(source, "only library functions can be called")
            if node.func.id not in functions:
                raise ExpressionError(source, f"undefined function {node.func.id}")
            if node.keywords:
                raise ExpressionError(source, f"{node.func.id}(): keyword arguments are not supported")
            calls.add(node.func.id)
        elif isinstance(node, ast.Constant) and not isinstance(node.value, (str, int, float, bool, type(None))):
            raise ExpressionError(source, f"unsupported literal {node.value!r}")

    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id not in calls:
            names.add(node.id)

    code = compile(tree, "<expression>", "eval")
    return Expression(source, code, frozenset(names), frozenset(calls))


class ExpressionCache:
    """
    Кэш скомпилированных выражений одного поколения правил.

    Ключ — исходный текст как есть. Кэш наполняется при загрузке правил,
    затем замораживается; при перезагрузке строится новый кэш целиком.
    """

    def __init__(self, functions: Collection[str]) -> None:
        self._functions = frozenset(functions)
        self._items: Dict[str, Expression] = {}
        self._frozen = False

    def compile(self, source: str) -> Expression:
        expr = self._items.get(source)
        if expr is not None:
            return expr
        if self._frozen:
            raise AutomataError(f"expression cache is frozen, '{source}' was not precompiled")
        expr = compile_expression(source, self._functions)
        self._items[source] = expr
        return expr

    def get(self, source: str) -> Optional[Expression]:
        return self._items.get(source)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, source: object) -> bool:
        return source in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)
