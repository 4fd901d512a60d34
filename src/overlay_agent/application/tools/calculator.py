"""Calculator tool (safe arithmetic evaluation)."""

from __future__ import annotations

import ast
import math
import operator
from typing import Any

from overlay_agent.application.models import PermissionLevel, RiskLevel, ToolPermission
from overlay_agent.application.registry import Tool

_BINARY_OPERATORS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Any] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "pow": pow,
    "sqrt": math.sqrt,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
}

_CONSTANTS: dict[str, float] = {"pi": math.pi, "e": math.e}

# 2**10000 のような巨大な累乗でイベントループを止めないための上限
_MAX_EXPONENT = 1000


def evaluate(expression: str) -> int | float:
    """
    数式を評価する.

    四則演算・累乗・剰余と一部の数学関数のみを許可し、任意コードは実行しない。
    `^` は累乗として扱う。

    Args:
        expression: 数式文字列

    Returns:
        評価結果

    Raises:
        ValueError: 許可されていない構文を含む場合
        ZeroDivisionError: ゼロ除算の場合
    """
    tree = ast.parse(expression.replace("^", "**"), mode="eval")
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return node.value
        msg = f"Unsupported constant: {node.value!r}"
        raise ValueError(msg)

    if isinstance(node, ast.Name):
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        msg = f"Unknown name: {node.id}"
        raise ValueError(msg)

    if isinstance(node, ast.BinOp):
        op = _BINARY_OPERATORS.get(type(node.op))
        if op is None:
            msg = f"Unsupported operator: {type(node.op).__name__}"
            raise ValueError(msg)
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            msg = "Exponent too large"
            raise ValueError(msg)
        return op(left, right)

    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPERATORS.get(type(node.op))
        if op is None:
            msg = f"Unsupported unary operator: {type(node.op).__name__}"
            raise ValueError(msg)
        return op(_eval_node(node.operand))

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            msg = "Unsupported function call"
            raise ValueError(msg)
        if node.keywords:
            msg = "Keyword arguments are not supported"
            raise ValueError(msg)
        args = [_eval_node(arg) for arg in node.args]
        return _FUNCTIONS[node.func.id](*args)

    msg = f"Unsupported expression: {type(node).__name__}"
    raise ValueError(msg)


def _format_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return str(value)


async def _calculate(tool_input: dict[str, Any]) -> str:
    expression = str(tool_input.get("expression", "")).strip()
    if not expression:
        msg = "expression is required"
        raise ValueError(msg)
    try:
        return _format_number(evaluate(expression))
    except SyntaxError as e:
        msg = f"Invalid expression: {expression}"
        raise ValueError(msg) from e


calculator_tool = Tool(
    name="calculator",
    description=(
        "Evaluate a mathematical expression safely. Supports arithmetic, "
        "math functions (sqrt, sin, cos, log, etc.), and constants (pi, e). "
        "Use this for any calculation instead of doing mental math."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "expression": {
                "type": "string",
                "description": 'A math expression to evaluate, e.g. "2^10", "sqrt(144)"',
            },
        },
        "required": ["expression"],
    },
    handler=_calculate,
    permission=ToolPermission(
        permission=PermissionLevel.ALWAYS, risk_level=RiskLevel.SAFE
    ),
)
