from __future__ import annotations

from dataclasses import dataclass

from cbackend.env import Env
from cbackend.type_model import LONG, ExprType, FunctionType


@dataclass(frozen=True)
class Variable:
    name: str
    type: ExprType
    env: Env


@dataclass(frozen=True)
class IntLiteral:
    value: int
    type: ExprType = LONG


@dataclass(frozen=True)
class StringLiteral:
    value: str
    type: ExprType


@dataclass(frozen=True)
class Assign:
    left: "Expression"
    right: "Expression"
    type: ExprType


@dataclass(frozen=True)
class AssignList:
    exprs: list["Expression"]
    type: ExprType


@dataclass(frozen=True)
class ConditionalExpr:
    cond: "Expression"
    true_expr: "Expression"
    false_expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class FuncCall:
    func: "Expression"
    args: list["Expression"]
    type: ExprType


@dataclass(frozen=True)
class Attribute:
    expr: "Expression"
    name: str
    type: ExprType


@dataclass(frozen=True)
class Reference:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class Dereference:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class TypeCast:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class PreIncrement:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class PreDecrement:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class PostIncrement:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class PostDecrement:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class Negative:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class BitwiseNot:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class LogicalNot:
    expr: "Expression"
    type: ExprType


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expression"
    right: "Expression"
    type: ExprType


IncDecExpr = PreIncrement | PreDecrement | PostIncrement | PostDecrement
UnaryArithOp = Negative | BitwiseNot | LogicalNot

Expression = (
    Variable
    | IntLiteral
    | StringLiteral
    | Assign
    | AssignList
    | ConditionalExpr
    | FuncCall
    | Attribute
    | Reference
    | Dereference
    | TypeCast
    | IncDecExpr
    | UnaryArithOp
    | BinaryOp
)


@dataclass(frozen=True)
class ExprStmt:
    expr: Expression


@dataclass(frozen=True)
class CompoundStmt:
    stmts: list["Statement"]


@dataclass(frozen=True)
class LocalDecl:
    target: Variable
    initializer: Expression | None = None


@dataclass(frozen=True)
class IfStmt:
    cond: Expression
    then_stmt: "Statement"
    else_stmt: "Statement | None" = None


@dataclass(frozen=True)
class WhileStmt:
    cond: Expression
    body: "Statement"


@dataclass(frozen=True)
class DoWhileStmt:
    body: "Statement"
    cond: Expression


@dataclass(frozen=True)
class ForStmt:
    init: Expression | None
    cond: Expression | None
    loop: Expression | None
    body: "Statement"


@dataclass(frozen=True)
class SwitchStmt:
    expr: Expression
    body: "Statement"


@dataclass(frozen=True)
class CaseStmt:
    value: int
    stmt: "Statement"


@dataclass(frozen=True)
class DefaultStmt:
    stmt: "Statement"


@dataclass(frozen=True)
class BreakStmt:
    pass


@dataclass(frozen=True)
class ContinueStmt:
    pass


@dataclass(frozen=True)
class GotoStmt:
    label: str


@dataclass(frozen=True)
class LabeledStmt:
    label: str
    stmt: "Statement"


@dataclass(frozen=True)
class ReturnStmt:
    expr: Expression | None = None


Statement = (
    ExprStmt
    | CompoundStmt
    | LocalDecl
    | IfStmt
    | WhileStmt
    | DoWhileStmt
    | ForStmt
    | SwitchStmt
    | CaseStmt
    | DefaultStmt
    | BreakStmt
    | ContinueStmt
    | GotoStmt
    | LabeledStmt
    | ReturnStmt
)


@dataclass(frozen=True)
class FunctionDef:
    name: str
    type: FunctionType
    body: CompoundStmt
    frame_size: int = 0


@dataclass(frozen=True)
class GlobalDecl:
    name: str
    type: ExprType
    initializer: int = 0


@dataclass(frozen=True)
class TranslationUnit:
    globals: list[GlobalDecl]
    functions: list[FunctionDef]
