"""
语法分析 - 将 Token 序列解析为语法树。

语法树节点统一为 Node(kind, line, **fields)，由解释器按 kind 分派求值。
"""

from typing import Any, List, Optional, Tuple

from .lexer import Token, tokenize
from .values import ScriptSyntaxError

__all__ = [
    "Node",
    "Parser",
    "parse",
]

BINARY_PRECEDENCE = {
    "??": 1,
    "||": 2,
    "&&": 3,
    "|": 4,
    "^": 5,
    "&": 6,
    "==": 7, "!=": 7, "===": 7, "!==": 7,
    "<": 8, ">": 8, "<=": 8, ">=": 8, "instanceof": 8, "in": 8,
    "<<": 9, ">>": 9, ">>>": 9,
    "+": 10, "-": 10,
    "*": 11, "/": 11, "%": 11,
    "**": 12,
}
LOGICAL_OPERATORS = frozenset({"&&", "||", "??"})
ASSIGN_OPERATORS = frozenset({
    "=", "+=", "-=", "*=", "/=", "%=", "**=", "<<=", ">>=", ">>>=",
    "&=", "|=", "^=", "&&=", "||=", "??=",
})
UNARY_OPERATORS = frozenset({"!", "~", "+", "-", "typeof", "void", "delete"})

# 这些名字不能作为普通标识符引用
_RESERVED = frozenset({
    "var", "let", "const", "function", "return", "if", "else", "for", "while",
    "do", "break", "continue", "throw", "try", "catch", "finally", "switch",
    "case", "default", "new", "delete", "typeof", "instanceof", "in", "void",
    "class",
})


class Node:
    def __init__(self, kind: str, line: int = 0, **fields: Any) -> None:
        self.kind = kind
        self.line = line
        self.__dict__.update(fields)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.__dict__.items() if k not in ("kind", "line"))
        return f"Node({self.kind}, {fields})"


class Parser:
    def __init__(self, source: str, line: int = 1) -> None:
        self.tokens: List[Token] = tokenize(source, line)
        self.index = 0
        self.in_function = False

    # ── Token 工具 ─────────────────────────────────────────────

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def peek(self, offset: int = 1) -> Token:
        idx = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "eof":
            self.index += 1
        return token

    def error(self, message: str, token: Optional[Token] = None) -> ScriptSyntaxError:
        token = token or self.current
        return ScriptSyntaxError(f"{message} (第 {token.line} 行)")

    def unexpected(self) -> ScriptSyntaxError:
        token = self.current
        if token.type == "eof":
            return self.error("脚本意外结束")
        return self.error(f"意外的符号 {token.value!r}")

    def at_punct(self, value: str) -> bool:
        return self.current.is_punct(value)

    def at_name(self, value: str) -> bool:
        return self.current.is_name(value)

    def eat_punct(self, value: str) -> bool:
        if self.current.is_punct(value):
            self.advance()
            return True
        return False

    def expect_punct(self, value: str) -> Token:
        if not self.current.is_punct(value):
            raise self.error(f"缺少 {value!r}，实际为 {self.current.value!r}")
        return self.advance()

    def expect_name(self, value: str) -> Token:
        if not self.current.is_name(value):
            raise self.error(f"缺少 {value!r}")
        return self.advance()

    def identifier(self) -> str:
        token = self.current
        if token.type != "name" or token.value in _RESERVED:
            raise self.unexpected()
        self.advance()
        return token.value

    def consume_semicolon(self) -> None:
        if self.eat_punct(";"):
            return
        token = self.current
        if token.type == "eof" or token.is_punct("}") or token.nl_before:
            return
        raise self.unexpected()

    # ── 语句 ─────────────────────────────────────────────────

    def parse_program(self) -> Node:
        body = []
        while self.current.type != "eof":
            body.append(self.parse_statement())
        return Node("Program", 1, body=body)

    def parse_statement(self) -> Node:
        token = self.current
        line = token.line
        if token.type == "punct":
            if token.value == "{":
                return Node("Block", line, body=self.parse_block())
            if token.value == ";":
                self.advance()
                return Node("Empty", line)
        elif token.type == "name":
            value = token.value
            if value in ("var", "let", "const"):
                node = self.parse_var_declaration()
                self.consume_semicolon()
                return node
            if value == "function":
                return self.parse_function(declaration=True)
            if value == "async" and self.peek().is_name("function") and not self.peek().nl_before:
                return self.parse_function(declaration=True)
            handler = getattr(self, f"_stmt_{value}", None) if value in _STATEMENT_KEYWORDS else None
            if handler is not None:
                return handler()
            if value == "class":
                raise self.error("不支持 class 语法")
        expression = self.parse_expression()
        self.consume_semicolon()
        return Node("Expr", line, expression=expression)

    def parse_block(self) -> List[Node]:
        self.expect_punct("{")
        body = []
        while not self.at_punct("}"):
            if self.current.type == "eof":
                raise self.unexpected()
            body.append(self.parse_statement())
        self.advance()
        return body

    def parse_var_declaration(self, in_for: bool = False) -> Node:
        token = self.advance()
        kind = token.value
        declarations = []
        while True:
            target = self.parse_binding_target()
            init = None
            if self.eat_punct("="):
                init = self.parse_assign()
            elif kind == "const" and not in_for:
                raise self.error("const 声明缺少初始值")
            declarations.append((target, init))
            if not self.eat_punct(","):
                break
        return Node("VarDecl", token.line, decl_kind=kind, declarations=declarations)

    def _stmt_if(self) -> Node:
        line = self.advance().line
        self.expect_punct("(")
        test = self.parse_expression()
        self.expect_punct(")")
        consequent = self.parse_statement()
        alternate = None
        if self.at_name("else"):
            self.advance()
            alternate = self.parse_statement()
        return Node("If", line, test=test, consequent=consequent, alternate=alternate)

    def _stmt_for(self) -> Node:
        line = self.advance().line
        self.expect_punct("(")
        init = None
        if self.current.type == "name" and self.current.value in ("var", "let", "const"):
            kind = self.current.value
            start = self.index
            self.advance()
            target = self.parse_binding_target()
            if self.current.is_name("of") or self.current.is_name("in"):
                loop_kind = "ForOf" if self.advance().value == "of" else "ForIn"
                right = self.parse_assign() if loop_kind == "ForOf" else self.parse_expression()
                self.expect_punct(")")
                body = self.parse_statement()
                return Node(loop_kind, line, decl_kind=kind, target=target, right=right, body=body)
            self.index = start
            init = self.parse_var_declaration(in_for=True)
        elif not self.at_punct(";"):
            start = self.index
            left = self.parse_unary()
            if self.current.is_name("of") or self.current.is_name("in"):
                loop_kind = "ForOf" if self.advance().value == "of" else "ForIn"
                right = self.parse_assign() if loop_kind == "ForOf" else self.parse_expression()
                self.expect_punct(")")
                body = self.parse_statement()
                return Node(loop_kind, line, decl_kind=None, target=self.to_pattern(left), right=right, body=body)
            self.index = start
            init = Node("Expr", line, expression=self.parse_expression())
        self.expect_punct(";")
        test = None if self.at_punct(";") else self.parse_expression()
        self.expect_punct(";")
        update = None if self.at_punct(")") else self.parse_expression()
        self.expect_punct(")")
        body = self.parse_statement()
        return Node("For", line, init=init, test=test, update=update, body=body)

    def _stmt_while(self) -> Node:
        line = self.advance().line
        self.expect_punct("(")
        test = self.parse_expression()
        self.expect_punct(")")
        return Node("While", line, test=test, body=self.parse_statement())

    def _stmt_do(self) -> Node:
        line = self.advance().line
        body = self.parse_statement()
        self.expect_name("while")
        self.expect_punct("(")
        test = self.parse_expression()
        self.expect_punct(")")
        self.eat_punct(";")
        return Node("DoWhile", line, test=test, body=body)

    def _stmt_return(self) -> Node:
        token = self.advance()
        if not self.in_function:
            raise self.error("return 只能出现在函数内", token)
        argument = None
        current = self.current
        if not (current.is_punct(";") or current.is_punct("}") or current.type == "eof" or current.nl_before):
            argument = self.parse_expression()
        self.consume_semicolon()
        return Node("Return", token.line, argument=argument)

    def _stmt_break(self) -> Node:
        line = self.advance().line
        self.consume_semicolon()
        return Node("Break", line)

    def _stmt_continue(self) -> Node:
        line = self.advance().line
        self.consume_semicolon()
        return Node("Continue", line)

    def _stmt_throw(self) -> Node:
        token = self.advance()
        if self.current.nl_before:
            raise self.error("throw 之后不能换行", token)
        argument = self.parse_expression()
        self.consume_semicolon()
        return Node("Throw", token.line, argument=argument)

    def _stmt_try(self) -> Node:
        line = self.advance().line
        block = self.parse_block()
        param = None
        handler = None
        finalizer = None
        if self.at_name("catch"):
            self.advance()
            if self.eat_punct("("):
                param = self.parse_binding_target()
                self.expect_punct(")")
            handler = self.parse_block()
        if self.at_name("finally"):
            self.advance()
            finalizer = self.parse_block()
        if handler is None and finalizer is None:
            raise self.error("try 语句缺少 catch 或 finally")
        return Node("Try", line, block=block, param=param, handler=handler, finalizer=finalizer)

    def _stmt_switch(self) -> Node:
        line = self.advance().line
        self.expect_punct("(")
        discriminant = self.parse_expression()
        self.expect_punct(")")
        self.expect_punct("{")
        cases: List[Tuple[Optional[Node], List[Node]]] = []
        while not self.eat_punct("}"):
            if self.at_name("case"):
                self.advance()
                test = self.parse_expression()
            elif self.at_name("default"):
                self.advance()
                test = None
            else:
                raise self.unexpected()
            self.expect_punct(":")
            body = []
            while not (self.at_name("case") or self.at_name("default") or self.at_punct("}")):
                if self.current.type == "eof":
                    raise self.unexpected()
                body.append(self.parse_statement())
            cases.append((test, body))
        return Node("Switch", line, discriminant=discriminant, cases=cases)

    # ── 函数 ─────────────────────────────────────────────────

    def parse_function(self, declaration: bool = False) -> Node:
        line = self.current.line
        is_async = False
        if self.at_name("async"):
            self.advance()
            is_async = True
        self.expect_name("function")
        name = None
        if self.current.type == "name" and not self.at_punct("("):
            name = self.identifier()
        elif declaration:
            raise self.error("函数声明缺少名称")
        params, rest = self.parse_params()
        body = self.parse_function_body()
        kind = "FunctionDecl" if declaration else "FunctionExpr"
        return Node(kind, line, name=name, params=params, rest=rest, body=body,
                    expression=None, is_async=is_async, is_arrow=False)

    def parse_params(self):
        self.expect_punct("(")
        params = []
        rest = None
        while not self.eat_punct(")"):
            if self.eat_punct("..."):
                rest = self.parse_binding_target()
                self.eat_punct(",")
                self.expect_punct(")")
                break
            target = self.parse_binding_target()
            default = self.parse_assign() if self.eat_punct("=") else None
            params.append((target, default))
            if not self.at_punct(")"):
                self.expect_punct(",")
        return params, rest

    def parse_function_body(self) -> List[Node]:
        saved = self.in_function
        self.in_function = True
        try:
            return self.parse_block()
        finally:
            self.in_function = saved

    def _arrow_ahead(self) -> bool:
        """判断当前 ( 开始的括号组之后是否紧跟 =>。"""
        depth = 0
        i = self.index
        while i < len(self.tokens):
            token = self.tokens[i]
            if token.type == "eof":
                return False
            if token.type == "punct":
                if token.value in ("(", "[", "{"):
                    depth += 1
                elif token.value in (")", "]", "}"):
                    depth -= 1
                    if depth == 0:
                        nxt = self.tokens[i + 1]
                        return nxt.is_punct("=>") and not nxt.nl_before
            i += 1
        return False

    def parse_arrow(self, is_async: bool) -> Node:
        line = self.current.line
        if self.current.type == "name":
            params = [(Node("Identifier", line, name=self.identifier()), None)]
            rest = None
        else:
            params, rest = self.parse_params()
        self.expect_punct("=>")
        if self.at_punct("{"):
            body = self.parse_function_body()
            expression = None
        else:
            body = None
            saved = self.in_function
            self.in_function = True
            try:
                expression = self.parse_assign()
            finally:
                self.in_function = saved
        return Node("FunctionExpr", line, name=None, params=params, rest=rest, body=body,
                    expression=expression, is_async=is_async, is_arrow=True)

    # ── 解构模式 ─────────────────────────────────────────────

    def parse_binding_target(self) -> Node:
        line = self.current.line
        if self.at_punct("["):
            self.advance()
            elements = []
            rest = None
            while not self.eat_punct("]"):
                if self.at_punct(","):
                    self.advance()
                    elements.append(None)
                    continue
                if self.eat_punct("..."):
                    rest = self.parse_binding_target()
                    self.expect_punct("]")
                    break
                target = self.parse_binding_target()
                default = self.parse_assign() if self.eat_punct("=") else None
                elements.append((target, default))
                if not self.at_punct("]"):
                    self.expect_punct(",")
            return Node("ArrayPattern", line, elements=elements, rest=rest)
        if self.at_punct("{"):
            self.advance()
            properties = []
            rest = None
            while not self.eat_punct("}"):
                if self.eat_punct("..."):
                    rest = self.parse_binding_target()
                    self.expect_punct("}")
                    break
                key, computed = self.parse_property_key()
                if self.eat_punct(":"):
                    target = self.parse_binding_target()
                else:
                    if computed or not isinstance(key, str):
                        raise self.unexpected()
                    target = Node("Identifier", line, name=key)
                default = self.parse_assign() if self.eat_punct("=") else None
                properties.append((key, computed, target, default))
                if not self.at_punct("}"):
                    self.expect_punct(",")
            return Node("ObjectPattern", line, properties=properties, rest=rest)
        return Node("Identifier", line, name=self.identifier())

    def to_pattern(self, node: Node) -> Node:
        """将已解析的左值表达式转换为赋值模式。"""
        kind = node.kind
        if kind in ("Identifier", "Member"):
            if kind == "Member" and node.optional:
                raise self.error("可选链不能作为赋值目标")
            return node
        if kind == "Array":
            elements = []
            rest = None
            for item in node.elements:
                if item is None:
                    elements.append(None)
                elif item.kind == "Spread":
                    rest = self.to_pattern(item.argument)
                elif item.kind == "Assign" and item.operator == "=":
                    elements.append((self.to_pattern(item.target), item.value))
                else:
                    elements.append((self.to_pattern(item), None))
            return Node("ArrayPattern", node.line, elements=elements, rest=rest)
        if kind == "Object":
            properties = []
            rest = None
            for prop in node.properties:
                if prop[0] == "spread":
                    rest = self.to_pattern(prop[1])
                    continue
                _, key, computed, value = prop
                default = None
                if value.kind == "Assign" and value.operator == "=":
                    value, default = value.target, value.value
                properties.append((key, computed, self.to_pattern(value), default))
            return Node("ObjectPattern", node.line, properties=properties, rest=rest)
        raise self.error("无效的赋值目标")

    # ── 表达式 ───────────────────────────────────────────────

    def parse_expression(self) -> Node:
        line = self.current.line
        expression = self.parse_assign()
        if not self.at_punct(","):
            return expression
        expressions = [expression]
        while self.eat_punct(","):
            expressions.append(self.parse_assign())
        return Node("Sequence", line, expressions=expressions)

    def parse_assign(self) -> Node:
        token = self.current
        line = token.line
        if token.type == "name" and token.value not in _RESERVED:
            nxt = self.peek()
            if token.value == "async" and not nxt.nl_before:
                if nxt.type == "name" and self.peek(2).is_punct("=>"):
                    self.advance()
                    return self.parse_arrow(is_async=True)
                if nxt.is_punct("("):
                    self.advance()
                    if self._arrow_ahead():
                        return self.parse_arrow(is_async=True)
                    self.index -= 1
            if nxt.is_punct("=>") and not nxt.nl_before:
                return self.parse_arrow(is_async=False)
        elif token.is_punct("(") and self._arrow_ahead():
            return self.parse_arrow(is_async=False)

        left = self.parse_conditional()
        current = self.current
        if current.type == "punct" and current.value in ASSIGN_OPERATORS:
            operator = self.advance().value
            target = self.to_pattern(left) if operator == "=" else left
            if operator != "=" and target.kind not in ("Identifier", "Member"):
                raise self.error("无效的赋值目标")
            value = self.parse_assign()
            return Node("Assign", line, operator=operator, target=target, value=value)
        return left

    def parse_conditional(self) -> Node:
        line = self.current.line
        test = self.parse_binary(1)
        if not self.eat_punct("?"):
            return test
        consequent = self.parse_assign()
        self.expect_punct(":")
        alternate = self.parse_assign()
        return Node("Conditional", line, test=test, consequent=consequent, alternate=alternate)

    def _binary_operator(self) -> Optional[str]:
        token = self.current
        if token.type == "punct" and token.value in BINARY_PRECEDENCE:
            return token.value
        if token.type == "name" and token.value in ("instanceof", "in"):
            return token.value
        return None

    def parse_binary(self, min_precedence: int) -> Node:
        left = self.parse_unary()
        while True:
            operator = self._binary_operator()
            if operator is None:
                return left
            precedence = BINARY_PRECEDENCE[operator]
            if precedence < min_precedence:
                return left
            line = self.advance().line
            # ** 为右结合
            next_min = precedence if operator == "**" else precedence + 1
            right = self.parse_binary(next_min)
            kind = "Logical" if operator in LOGICAL_OPERATORS else "Binary"
            left = Node(kind, line, operator=operator, left=left, right=right)

    def parse_unary(self) -> Node:
        token = self.current
        line = token.line
        if token.type == "punct" and token.value in ("!", "~", "+", "-"):
            self.advance()
            return Node("Unary", line, operator=token.value, argument=self.parse_unary())
        if token.type == "punct" and token.value in ("++", "--"):
            self.advance()
            target = self.parse_unary()
            if target.kind not in ("Identifier", "Member"):
                raise self.error("无效的自增/自减目标")
            return Node("Update", line, operator=token.value, prefix=True, target=target)
        if token.type == "name" and token.value in ("typeof", "void", "delete"):
            self.advance()
            return Node("Unary", line, operator=token.value, argument=self.parse_unary())
        if token.type == "name" and token.value == "await":
            self.advance()
            return Node("Await", line, argument=self.parse_unary())
        expression = self.parse_postfix()
        if self.at_punct("**") and expression.kind == "Unary":
            raise self.error("一元表达式不能直接作为 ** 的底数")
        return expression

    def parse_postfix(self) -> Node:
        expression = self.parse_call_member()
        token = self.current
        if token.type == "punct" and token.value in ("++", "--") and not token.nl_before:
            if expression.kind not in ("Identifier", "Member"):
                raise self.error("无效的自增/自减目标")
            self.advance()
            return Node("Update", token.line, operator=token.value, prefix=False, target=expression)
        return expression

    def parse_arguments(self) -> List[Node]:
        self.expect_punct("(")
        args = []
        while not self.eat_punct(")"):
            if self.at_punct("..."):
                line = self.advance().line
                args.append(Node("Spread", line, argument=self.parse_assign()))
            else:
                args.append(self.parse_assign())
            if not self.at_punct(")"):
                self.expect_punct(",")
        return args

    def parse_call_member(self, allow_call: bool = True) -> Node:
        if self.at_name("new"):
            expression = self.parse_new()
        else:
            expression = self.parse_primary()
        has_optional = False
        while True:
            token = self.current
            line = token.line
            if token.is_punct("."):
                self.advance()
                name_token = self.advance()
                if name_token.type != "name":
                    raise self.error("属性名无效", name_token)
                expression = Node("Member", line, object=expression,
                                  property=Node("Literal", line, value=name_token.value),
                                  computed=False, optional=False)
            elif token.is_punct("?."):
                self.advance()
                has_optional = True
                if self.at_punct("("):
                    if not allow_call:
                        raise self.unexpected()
                    expression = Node("Call", line, callee=expression, arguments=self.parse_arguments(), optional=True)
                elif self.eat_punct("["):
                    prop = self.parse_expression()
                    self.expect_punct("]")
                    expression = Node("Member", line, object=expression, property=prop, computed=True, optional=True)
                else:
                    name_token = self.advance()
                    if name_token.type != "name":
                        raise self.error("属性名无效", name_token)
                    expression = Node("Member", line, object=expression,
                                      property=Node("Literal", line, value=name_token.value),
                                      computed=False, optional=True)
            elif token.is_punct("["):
                self.advance()
                prop = self.parse_expression()
                self.expect_punct("]")
                expression = Node("Member", line, object=expression, property=prop, computed=True, optional=False)
            elif token.is_punct("(") and allow_call:
                expression = Node("Call", line, callee=expression, arguments=self.parse_arguments(), optional=False)
            elif token.type == "template" and not token.nl_before:
                raise self.error("不支持带标签的模板字符串")
            else:
                break
        if has_optional:
            expression = Node("Chain", expression.line, expression=expression)
        return expression

    def parse_new(self) -> Node:
        line = self.advance().line
        callee = self.parse_call_member(allow_call=False)
        args = self.parse_arguments() if self.at_punct("(") else []
        return Node("New", line, callee=callee, arguments=args)

    def parse_property_key(self) -> Tuple[Any, bool]:
        token = self.current
        if token.is_punct("["):
            self.advance()
            key = self.parse_assign()
            self.expect_punct("]")
            return key, True
        if token.type in ("name", "str"):
            self.advance()
            return token.value, False
        if token.type == "num":
            from .values import number_to_string
            self.advance()
            return number_to_string(token.value), False
        raise self.unexpected()

    def parse_object(self) -> Node:
        line = self.expect_punct("{").line
        properties: List[tuple] = []
        while not self.eat_punct("}"):
            if self.at_punct("..."):
                self.advance()
                properties.append(("spread", self.parse_assign()))
            else:
                is_async = False
                if self.at_name("async") and not self.peek().is_punct(":") and not self.peek().is_punct("(") \
                        and not self.peek().is_punct(",") and not self.peek().is_punct("}"):
                    self.advance()
                    is_async = True
                if (self.at_name("get") or self.at_name("set")) and self.peek().type in ("name", "str") \
                        and not self.peek().is_punct(":"):
                    raise self.error("不支持 getter/setter")
                key_token = self.current
                key, computed = self.parse_property_key()
                if self.at_punct("("):
                    params, rest = self.parse_params()
                    body = self.parse_function_body()
                    value = Node("FunctionExpr", key_token.line, name=key if isinstance(key, str) else None,
                                 params=params, rest=rest, body=body, expression=None,
                                 is_async=is_async, is_arrow=False)
                elif self.eat_punct(":"):
                    value = self.parse_assign()
                else:
                    if computed or key_token.type != "name" or key in _RESERVED:
                        raise self.unexpected()
                    value = Node("Identifier", key_token.line, name=key)
                    if self.at_punct("="):
                        # 仅在解构赋值中合法：{ a = 1 } = obj
                        self.advance()
                        value = Node("Assign", key_token.line, operator="=", target=value, value=self.parse_assign())
                properties.append(("prop", key, computed, value))
            if not self.at_punct("}"):
                self.expect_punct(",")
        return Node("Object", line, properties=properties)

    def parse_array(self) -> Node:
        line = self.expect_punct("[").line
        elements: List[Optional[Node]] = []
        while not self.eat_punct("]"):
            if self.at_punct(","):
                self.advance()
                elements.append(None)
                continue
            if self.at_punct("..."):
                spread_line = self.advance().line
                elements.append(Node("Spread", spread_line, argument=self.parse_assign()))
            else:
                elements.append(self.parse_assign())
            if not self.at_punct("]"):
                self.expect_punct(",")
        return Node("Array", line, elements=elements)

    def parse_template(self, token: Token) -> Node:
        quasis: List[str] = []
        expressions: List[Node] = []
        for kind, text in token.value:
            if kind == "str":
                quasis.append(text)
            else:
                sub = Parser(text, token.line)
                sub.in_function = self.in_function
                expressions.append(sub.parse_expression())
                if sub.current.type != "eof":
                    raise sub.unexpected()
        return Node("Template", token.line, quasis=quasis, expressions=expressions)

    def parse_primary(self) -> Node:
        token = self.current
        line = token.line
        if token.type == "num" or token.type == "str":
            self.advance()
            return Node("Literal", line, value=token.value)
        if token.type == "template":
            self.advance()
            return self.parse_template(token)
        if token.type == "regex":
            self.advance()
            pattern, flags = token.value
            return Node("RegExp", line, pattern=pattern, flags=flags)
        if token.type == "punct":
            if token.value == "(":
                self.advance()
                expression = self.parse_expression()
                self.expect_punct(")")
                return expression
            if token.value == "[":
                return self.parse_array()
            if token.value == "{":
                return self.parse_object()
            raise self.unexpected()
        if token.type == "name":
            value = token.value
            if value == "function" or (value == "async" and self.peek().is_name("function")):
                return self.parse_function(declaration=False)
            if value == "true" or value == "false":
                self.advance()
                return Node("Literal", line, value=value == "true")
            if value == "null":
                self.advance()
                return Node("Literal", line, value=None)
            if value == "this":
                self.advance()
                return Node("This", line)
            return Node("Identifier", line, name=self.identifier())
        raise self.unexpected()


_STATEMENT_KEYWORDS = frozenset({"if", "for", "while", "do", "return", "break", "continue", "throw", "try", "switch"})


def parse(source: str) -> Node:
    return Parser(source).parse_program()
