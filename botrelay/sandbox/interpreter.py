"""
树遍历解释器。

每个语法节点由同名方法求值（_exec_<Kind> / _eval_<Kind>），全部为协程，
因此脚本中的 await 与宿主提供的异步能力可以自然衔接。

隔离约束：
- 脚本只能访问全局作用域中注入的名字
- 属性访问只经过各类型的方法表，不会触达 Python 对象的内部属性
- 执行步数与调用深度有硬上限，超限时抛出脚本内不可捕获的 ScriptAbort
"""

import asyncio
import inspect
import logging
import math
from typing import Any, Dict, List, Optional

from .builtins import (
    ARRAY_METHODS,
    BOOLEAN_METHODS,
    DATE_METHODS,
    FUNCTION_METHODS,
    NUMBER_METHODS,
    OBJECT_METHODS,
    PROMISE_METHODS,
    REGEXP_METHODS,
    STRING_METHODS,
    MatchResult,
    create_globals,
)
from .parser import Node
from .values import (
    UNDEFINED,
    HostConstructor,
    HostFunction,
    JSDate,
    JSFunction,
    JSObject,
    JSPromise,
    JSRegExp,
    JSThrow,
    ScriptAbort,
    call_limit_args,
    is_callable,
    is_nullish,
    is_number,
    loose_equals,
    make_error,
    power,
    strict_equals,
    to_boolean,
    to_int32,
    to_js,
    to_number,
    to_property_key,
    to_string,
    type_of,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Scope",
    "Interpreter",
]

MAX_ARRAY_LENGTH = 1_000_000


class _BreakSignal(Exception):
    pass


class _ContinueSignal(Exception):
    pass


class _ReturnSignal(Exception):
    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


class _ShortCircuit(Exception):
    """可选链遇到 null/undefined 时中止整条链。"""


_BREAK = _BreakSignal()
_CONTINUE = _ContinueSignal()
_SHORT_CIRCUIT = _ShortCircuit()


class Scope:
    __slots__ = ("vars", "consts", "parent", "is_function")

    def __init__(self, parent: Optional["Scope"] = None, is_function: bool = False) -> None:
        self.vars: Dict[str, Any] = {}
        self.consts: set = set()
        self.parent = parent
        self.is_function = is_function

    def find(self, name: str) -> Optional["Scope"]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.vars:
                return scope
            scope = scope.parent
        return None

    def function_scope(self) -> "Scope":
        scope = self
        while not scope.is_function and scope.parent is not None:
            scope = scope.parent
        return scope

    def declare(self, name: str, value: Any, const: bool = False) -> None:
        self.vars[name] = value
        if const:
            self.consts.add(name)
        else:
            self.consts.discard(name)


def _type_error(message: str) -> JSThrow:
    return JSThrow(make_error("TypeError", message))


def _describe(node: Node) -> str:
    if node.kind == "Identifier":
        return node.name
    if node.kind == "Member" and not node.computed:
        return f"{_describe(node.object)}.{node.property.value}"
    if node.kind == "This":
        return "this"
    return "expression"


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _to_primitive(value: Any) -> Any:
    if isinstance(value, (list, dict, JSFunction, HostFunction, JSDate, JSRegExp, JSPromise, bytes)):
        return to_string(value)
    return value


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) and isinstance(right, str):
        return left + right
    left, right = _to_primitive(left), _to_primitive(right)
    if isinstance(left, str) or isinstance(right, str):
        return to_string(left) + to_string(right)
    return _arith(to_number(left) + to_number(right))


def _arith(value: Any) -> Any:
    if isinstance(value, int) and abs(value) > 2 ** 1024:
        return math.inf if value > 0 else -math.inf
    return value


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or _is_nan(left):
            return math.nan
        return math.copysign(math.inf, left) * (math.copysign(1, right) if isinstance(right, float) else 1)
    if isinstance(left, int) and isinstance(right, int) and left % right == 0:
        return left // right
    try:
        return left / right
    except OverflowError:
        return math.inf if (left > 0) == (right > 0) else -math.inf


def _modulo(left: float, right: float) -> float:
    if right == 0 or _is_nan(left) or _is_nan(right) or (isinstance(left, float) and math.isinf(left)):
        return math.nan
    if isinstance(right, float) and math.isinf(right):
        return left
    if isinstance(left, int) and isinstance(right, int):
        result = abs(left) % abs(right)
        return -result if left < 0 else result
    return math.fmod(left, right)


def _compare(left: Any, right: Any, op: str) -> bool:
    left, right = _to_primitive(left), _to_primitive(right)
    if not (isinstance(left, str) and isinstance(right, str)):
        left, right = to_number(left), to_number(right)
        if _is_nan(left) or _is_nan(right):
            return False
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    return left >= right


def _numeric_binary(op: str, left: Any, right: Any) -> Any:
    if op == "-":
        return _arith(to_number(left) - to_number(right))
    if op == "*":
        a, b = to_number(left), to_number(right)
        try:
            return _arith(a * b)
        except OverflowError:
            return math.inf if (a > 0) == (b > 0) else -math.inf
    if op == "/":
        return _divide(to_number(left), to_number(right))
    if op == "%":
        return _modulo(to_number(left), to_number(right))
    if op == "**":
        return power(to_number(left), to_number(right))
    if op == "&":
        return to_int32(left) & to_int32(right)
    if op == "|":
        return to_int32(left) | to_int32(right)
    if op == "^":
        return to_int32(left) ^ to_int32(right)
    if op == "<<":
        return to_int32(to_int32(left) << (to_int32(right) & 31))
    if op == ">>":
        return to_int32(left) >> (to_int32(right) & 31)
    if op == ">>>":
        return (to_int32(left) & 0xFFFFFFFF) >> (to_int32(right) & 31)
    raise _type_error(f"不支持的运算符 {op}")


class Interpreter:
    """
    单次脚本执行的解释器实例。

    Args:
        capabilities: 注入到全局作用域的宿主能力（名字 -> 函数或值）
        max_steps: 允许执行的最大步数（语句、循环迭代与函数调用）
        max_depth: 函数调用的最大嵌套深度
    """

    def __init__(
        self,
        capabilities: Optional[Dict[str, Any]] = None,
        max_steps: int = 200000,
        max_depth: int = 48,
        script_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.max_steps = max_steps
        self.max_depth = max_depth
        self.steps = 0
        self.depth = 0
        self.logger = script_logger or logger
        self.global_scope = Scope(is_function=True)
        for name, value in create_globals(self, self.logger).items():
            self.global_scope.declare(name, value)
        for name, value in (capabilities or {}).items():
            self.global_scope.declare(name, to_js(value), const=True)
        self.program_scope = Scope(self.global_scope, is_function=True)
        self._tasks: Dict[int, asyncio.Task] = {}
        self._next_task_id = 1
        self._execs = {
            name[len("_exec_"):]: getattr(self, name) for name in dir(self) if name.startswith("_exec_")
        }
        self._evals = {
            name[len("_eval_"):]: getattr(self, name) for name in dir(self) if name.startswith("_eval_")
        }

    # ── 资源限制 ─────────────────────────────────────────────

    def tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ScriptAbort(f"脚本执行步数超过上限 ({self.max_steps})")

    # ── 异步任务（setTimeout / then） ─────────────────────────

    def spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task_id = self._next_task_id
        self._next_task_id += 1
        self._tasks[task_id] = task
        task.add_done_callback(lambda t, tid=task_id: self._tasks.pop(tid, None))
        # 未被 await 的失败任务不触发 asyncio 告警
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        return task

    def add_timer(self, coro: Any) -> int:
        task_id = self._next_task_id
        self.spawn(coro)
        return task_id

    def cancel_timer(self, task_id: Any) -> None:
        if not is_number(task_id):
            return
        task = self._tasks.get(int(task_id))
        if task is not None:
            task.cancel()

    async def drain(self) -> None:
        """等待脚本留下的定时器与 then 回调全部完成。"""
        while self._tasks:
            tasks = list(self._tasks.values())
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, ScriptAbort):
                    raise result
                if isinstance(result, JSThrow):
                    self.logger.warning("插件异步任务未捕获异常: %s", result)

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()

    # ── 入口 ─────────────────────────────────────────────────

    async def run_program(self, program: Node) -> None:
        await self.exec_block(program.body, self.program_scope)

    def lookup(self, name: str) -> Any:
        scope = self.program_scope.find(name)
        return UNDEFINED if scope is None else scope.vars[name]

    # ── 函数调用 ─────────────────────────────────────────────

    async def call(self, func: Any, this: Any, args: List[Any]) -> Any:
        self.tick()
        if isinstance(func, HostFunction):
            return await self._call_host(func, this, args)
        if not isinstance(func, JSFunction):
            raise _type_error(f"{to_string(func)} is not a function")
        if self.depth >= self.max_depth:
            raise JSThrow(make_error("RangeError", "Maximum call stack size exceeded"))
        self.depth += 1
        try:
            if func.is_async:
                try:
                    value = await self._invoke(func, this, args)
                except JSThrow as exc:
                    return JSPromise.rejected(exc.value)
                return JSPromise.resolved(value)
            return await self._invoke(func, this, args)
        finally:
            self.depth -= 1

    async def _call_host(self, func: HostFunction, this: Any, args: List[Any]) -> Any:
        try:
            if func.raw:
                result = func.fn(self, this, args)
            else:
                result = func.fn(*call_limit_args(func, args))
            if inspect.isawaitable(result):
                result = await result
        except (JSThrow, ScriptAbort, RecursionError):
            raise
        except Exception as exc:
            raise JSThrow(make_error("Error", str(exc) or type(exc).__name__))
        return result if func.raw else to_js(result)

    async def _invoke(self, func: JSFunction, this: Any, args: List[Any]) -> Any:
        node = func.node
        scope = Scope(func.scope, is_function=True)
        if not node.is_arrow:
            scope.declare("this", this)
        for index, (target, default) in enumerate(node.params):
            value = args[index] if index < len(args) else UNDEFINED
            if value is UNDEFINED and default is not None:
                value = await self.evaluate(default, scope)
            await self.bind(target, value, scope, "let")
        if node.rest is not None:
            await self.bind(node.rest, list(args[len(node.params):]), scope, "let")
        if node.expression is not None:
            return await self.evaluate(node.expression, scope)
        try:
            await self.exec_block(node.body, scope)
        except _ReturnSignal as signal:
            return signal.value
        return UNDEFINED

    # ── 属性访问 ─────────────────────────────────────────────

    def get_member(self, obj: Any, key: Any) -> Any:
        if obj is UNDEFINED or obj is None:
            raise _type_error(f"Cannot read properties of {to_string(obj)} (reading '{to_property_key(key)}')")
        if isinstance(obj, dict):
            name = to_property_key(key)
            if name in obj:
                return obj[name]
            return OBJECT_METHODS.get(name, UNDEFINED)
        if isinstance(obj, list):
            if is_number(key):
                index = int(key) if key == int(key) else -1
                return obj[index] if 0 <= index < len(obj) else UNDEFINED
            name = to_property_key(key)
            if name == "length":
                return len(obj)
            if name.isdigit():
                index = int(name)
                return obj[index] if index < len(obj) else UNDEFINED
            if isinstance(obj, MatchResult) and name in obj.props:
                return obj.props[name]
            return ARRAY_METHODS.get(name, UNDEFINED)
        if isinstance(obj, str):
            if is_number(key):
                index = int(key) if key == int(key) else -1
                return obj[index] if 0 <= index < len(obj) else UNDEFINED
            name = to_property_key(key)
            if name == "length":
                return len(obj)
            if name.isdigit():
                index = int(name)
                return obj[index] if index < len(obj) else UNDEFINED
            return STRING_METHODS.get(name, UNDEFINED)
        name = to_property_key(key)
        if isinstance(obj, bool):
            return BOOLEAN_METHODS.get(name, UNDEFINED)
        if isinstance(obj, (int, float)):
            return NUMBER_METHODS.get(name, UNDEFINED)
        if isinstance(obj, (JSFunction, HostFunction)):
            if name in obj.properties:
                return obj.properties[name]
            if name == "name":
                return obj.name
            if name == "length":
                return len(obj.node.params) if isinstance(obj, JSFunction) else (obj.max_args or 0)
            return FUNCTION_METHODS.get(name, UNDEFINED)
        if isinstance(obj, JSDate):
            return DATE_METHODS.get(name, UNDEFINED)
        if isinstance(obj, JSRegExp):
            if name == "source":
                return obj.source
            if name == "flags":
                return obj.flags
            if name == "global":
                return obj.is_global
            if name == "lastIndex":
                return obj.last_index
            return REGEXP_METHODS.get(name, UNDEFINED)
        if isinstance(obj, JSPromise):
            return PROMISE_METHODS.get(name, UNDEFINED)
        if isinstance(obj, bytes):
            if name in ("byteLength", "length"):
                return len(obj)
            return UNDEFINED
        return UNDEFINED

    def set_member(self, obj: Any, key: Any, value: Any) -> None:
        if obj is UNDEFINED or obj is None:
            raise _type_error(f"Cannot set properties of {to_string(obj)} (setting '{to_property_key(key)}')")
        if isinstance(obj, dict):
            obj[to_property_key(key)] = value
            return
        if isinstance(obj, list):
            name = to_property_key(key)
            if name == "length":
                length = to_number(value)
                if not is_number(length) or length < 0 or length != int(length) or length > MAX_ARRAY_LENGTH:
                    raise JSThrow(make_error("RangeError", "Invalid array length"))
                length = int(length)
                if length < len(obj):
                    del obj[length:]
                else:
                    obj.extend([UNDEFINED] * (length - len(obj)))
                return
            if name.isdigit():
                index = int(name)
                if index >= MAX_ARRAY_LENGTH:
                    raise JSThrow(make_error("RangeError", "Invalid array length"))
                if index >= len(obj):
                    obj.extend([UNDEFINED] * (index + 1 - len(obj)))
                obj[index] = value
            return
        if isinstance(obj, (JSFunction, HostFunction)):
            obj.properties[to_property_key(key)] = value
            return
        if isinstance(obj, JSRegExp) and to_property_key(key) == "lastIndex":
            obj.last_index = int(to_number(value))

    def iterate(self, value: Any) -> List[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return list(value)
        raise _type_error(f"{type_of(value) if is_nullish(value) else to_string(value)} is not iterable")

    # ── 绑定与赋值 ───────────────────────────────────────────

    async def bind(self, target: Node, value: Any, scope: Scope, kind: Optional[str]) -> None:
        """将值绑定到标识符或解构模式。kind 为 None 时表示赋值。"""
        target_kind = target.kind
        if target_kind == "Identifier":
            if kind is None:
                self.assign(target.name, value, scope)
            elif kind == "var":
                scope.function_scope().declare(target.name, value)
            else:
                scope.declare(target.name, value, const=kind == "const")
            return
        if target_kind == "Member":
            obj = await self.evaluate(target.object, scope)
            key = target.property.value if not target.computed else await self.evaluate(target.property, scope)
            self.set_member(obj, key, value)
            return
        if target_kind == "ArrayPattern":
            items = self.iterate(value)
            for index, element in enumerate(target.elements):
                if element is None:
                    continue
                sub_target, default = element
                item = items[index] if index < len(items) else UNDEFINED
                if item is UNDEFINED and default is not None:
                    item = await self.evaluate(default, scope)
                await self.bind(sub_target, item, scope, kind)
            if target.rest is not None:
                await self.bind(target.rest, list(items[len(target.elements):]), scope, kind)
            return
        if target_kind == "ObjectPattern":
            if is_nullish(value):
                raise _type_error(f"Cannot destructure '{to_string(value)}' as it is {to_string(value)}.")
            used = set()
            for key, computed, sub_target, default in target.properties:
                name = to_property_key(await self.evaluate(key, scope)) if computed else key
                used.add(name)
                item = self.get_member(value, name)
                if item is UNDEFINED and default is not None:
                    item = await self.evaluate(default, scope)
                await self.bind(sub_target, item, scope, kind)
            if target.rest is not None:
                rest = JSObject()
                if isinstance(value, dict):
                    rest.update((k, v) for k, v in value.items() if k not in used)
                await self.bind(target.rest, rest, scope, kind)
            return
        raise _type_error("无效的赋值目标")

    def assign(self, name: str, value: Any, scope: Scope) -> None:
        owner = scope.find(name)
        if owner is None:
            # 未声明的变量赋值落在脚本顶层作用域
            self.program_scope.declare(name, value)
            return
        if name in owner.consts:
            raise _type_error("Assignment to constant variable.")
        owner.vars[name] = value

    # ── 语句 ─────────────────────────────────────────────────

    def _hoist(self, body: List[Node], scope: Scope) -> None:
        for stmt in body:
            if stmt.kind == "FunctionDecl":
                scope.declare(stmt.name, JSFunction(stmt, scope))

    async def exec_block(self, body: List[Node], scope: Scope) -> None:
        self._hoist(body, scope)
        for stmt in body:
            await self.execute(stmt, scope)

    async def execute(self, node: Node, scope: Scope) -> None:
        self.tick()
        await self._execs[node.kind](node, scope)

    async def _exec_Block(self, node: Node, scope: Scope) -> None:
        await self.exec_block(node.body, Scope(scope))

    async def _exec_Empty(self, node: Node, scope: Scope) -> None:
        return None

    async def _exec_FunctionDecl(self, node: Node, scope: Scope) -> None:
        return None

    async def _exec_Expr(self, node: Node, scope: Scope) -> None:
        await self.evaluate(node.expression, scope)

    async def _exec_VarDecl(self, node: Node, scope: Scope) -> None:
        for target, init in node.declarations:
            value = UNDEFINED if init is None else await self.evaluate(init, scope)
            if init is not None and target.kind == "Identifier" and isinstance(value, JSFunction) and not value.name:
                value.name = target.name
            await self.bind(target, value, scope, node.decl_kind)

    async def _exec_If(self, node: Node, scope: Scope) -> None:
        if to_boolean(await self.evaluate(node.test, scope)):
            await self.execute(node.consequent, scope)
        elif node.alternate is not None:
            await self.execute(node.alternate, scope)

    async def _run_body(self, body: Node, scope: Scope) -> bool:
        """执行循环体，返回 False 表示遇到 break。"""
        try:
            await self.execute(body, scope)
        except _BreakSignal:
            return False
        except _ContinueSignal:
            pass
        return True

    async def _exec_For(self, node: Node, scope: Scope) -> None:
        current = Scope(scope)
        if node.init is not None:
            await self.execute(node.init, current)
        while True:
            self.tick()
            if node.test is not None and not to_boolean(await self.evaluate(node.test, current)):
                break
            if not await self._run_body(node.body, Scope(current)):
                break
            # 每次迭代复制 let 绑定，闭包捕获的是当次迭代的值
            following = Scope(scope)
            following.vars = dict(current.vars)
            following.consts = current.consts
            current = following
            if node.update is not None:
                await self.evaluate(node.update, current)

    async def _exec_ForOf(self, node: Node, scope: Scope) -> None:
        iterable = await self.evaluate(node.right, scope)
        items = self.iterate(iterable)
        index = 0
        while index < len(items):
            self.tick()
            iteration = Scope(scope)
            await self.bind(node.target, items[index], iteration, node.decl_kind)
            if not await self._run_body(node.body, iteration):
                break
            index += 1

    async def _exec_ForIn(self, node: Node, scope: Scope) -> None:
        subject = await self.evaluate(node.right, scope)
        if isinstance(subject, dict):
            keys = list(subject.keys())
        elif isinstance(subject, (list, str)):
            keys = [str(i) for i in range(len(subject))]
        else:
            keys = []
        for key in keys:
            self.tick()
            iteration = Scope(scope)
            await self.bind(node.target, key, iteration, node.decl_kind)
            if not await self._run_body(node.body, iteration):
                break

    async def _exec_While(self, node: Node, scope: Scope) -> None:
        while True:
            self.tick()
            if not to_boolean(await self.evaluate(node.test, scope)):
                break
            if not await self._run_body(node.body, Scope(scope)):
                break

    async def _exec_DoWhile(self, node: Node, scope: Scope) -> None:
        while True:
            self.tick()
            if not await self._run_body(node.body, Scope(scope)):
                break
            if not to_boolean(await self.evaluate(node.test, scope)):
                break

    async def _exec_Return(self, node: Node, scope: Scope) -> None:
        value = UNDEFINED if node.argument is None else await self.evaluate(node.argument, scope)
        raise _ReturnSignal(value)

    async def _exec_Break(self, node: Node, scope: Scope) -> None:
        raise _BREAK

    async def _exec_Continue(self, node: Node, scope: Scope) -> None:
        raise _CONTINUE

    async def _exec_Throw(self, node: Node, scope: Scope) -> None:
        raise JSThrow(await self.evaluate(node.argument, scope))

    async def _exec_Try(self, node: Node, scope: Scope) -> None:
        try:
            try:
                await self.exec_block(node.block, Scope(scope))
            except JSThrow as exc:
                if node.handler is None:
                    raise
                handler_scope = Scope(scope)
                if node.param is not None:
                    await self.bind(node.param, exc.value, handler_scope, "let")
                await self.exec_block(node.handler, handler_scope)
        except (ScriptAbort, RecursionError):
            raise
        except Exception:
            if node.finalizer is not None:
                await self.exec_block(node.finalizer, Scope(scope))
            raise
        if node.finalizer is not None:
            await self.exec_block(node.finalizer, Scope(scope))

    async def _exec_Switch(self, node: Node, scope: Scope) -> None:
        discriminant = await self.evaluate(node.discriminant, scope)
        start = None
        default_index = None
        for index, (test, _) in enumerate(node.cases):
            if test is None:
                default_index = index
                continue
            if strict_equals(discriminant, await self.evaluate(test, scope)):
                start = index
                break
        if start is None:
            start = default_index
        if start is None:
            return
        block_scope = Scope(scope)
        try:
            for _, body in node.cases[start:]:
                await self.exec_block(body, block_scope)
        except _BreakSignal:
            pass

    # ── 表达式 ───────────────────────────────────────────────

    async def evaluate(self, node: Node, scope: Scope) -> Any:
        return await self._evals[node.kind](node, scope)

    async def _eval_Literal(self, node: Node, scope: Scope) -> Any:
        return node.value

    async def _eval_Template(self, node: Node, scope: Scope) -> str:
        pieces = [node.quasis[0]]
        for expression, quasi in zip(node.expressions, node.quasis[1:]):
            pieces.append(to_string(await self.evaluate(expression, scope)))
            pieces.append(quasi)
        return "".join(pieces)

    async def _eval_RegExp(self, node: Node, scope: Scope) -> JSRegExp:
        return JSRegExp(node.pattern, node.flags)

    async def _eval_Identifier(self, node: Node, scope: Scope) -> Any:
        owner = scope.find(node.name)
        if owner is None:
            raise JSThrow(make_error("ReferenceError", f"{node.name} is not defined"))
        return owner.vars[node.name]

    async def _eval_This(self, node: Node, scope: Scope) -> Any:
        owner = scope.find("this")
        return UNDEFINED if owner is None else owner.vars["this"]

    async def _eval_Array(self, node: Node, scope: Scope) -> list:
        result: List[Any] = []
        for element in node.elements:
            if element is None:
                result.append(UNDEFINED)
            elif element.kind == "Spread":
                result.extend(self.iterate(await self.evaluate(element.argument, scope)))
            else:
                result.append(await self.evaluate(element, scope))
        return result

    async def _eval_Object(self, node: Node, scope: Scope) -> JSObject:
        result = JSObject()
        for prop in node.properties:
            if prop[0] == "spread":
                source = await self.evaluate(prop[1], scope)
                if isinstance(source, dict):
                    result.update(source)
                elif isinstance(source, (list, str)):
                    result.update((str(i), v) for i, v in enumerate(source))
                continue
            _, key, computed, value_node = prop
            name = to_property_key(await self.evaluate(key, scope)) if computed else key
            value = await self.evaluate(value_node, scope)
            if isinstance(value, JSFunction) and not value.name:
                value.name = name
            result[name] = value
        return result

    async def _eval_FunctionExpr(self, node: Node, scope: Scope) -> JSFunction:
        if node.name and not node.is_arrow:
            # 具名函数表达式可在函数体内引用自身
            own_scope = Scope(scope)
            func = JSFunction(node, own_scope)
            own_scope.declare(node.name, func, const=True)
            return func
        return JSFunction(node, scope)

    async def _eval_Sequence(self, node: Node, scope: Scope) -> Any:
        value = UNDEFINED
        for expression in node.expressions:
            value = await self.evaluate(expression, scope)
        return value

    async def _eval_Conditional(self, node: Node, scope: Scope) -> Any:
        if to_boolean(await self.evaluate(node.test, scope)):
            return await self.evaluate(node.consequent, scope)
        return await self.evaluate(node.alternate, scope)

    async def _eval_Logical(self, node: Node, scope: Scope) -> Any:
        left = await self.evaluate(node.left, scope)
        op = node.operator
        if op == "&&":
            return await self.evaluate(node.right, scope) if to_boolean(left) else left
        if op == "||":
            return left if to_boolean(left) else await self.evaluate(node.right, scope)
        return await self.evaluate(node.right, scope) if is_nullish(left) else left

    async def _eval_Binary(self, node: Node, scope: Scope) -> Any:
        left = await self.evaluate(node.left, scope)
        right = await self.evaluate(node.right, scope)
        return self.binary(node.operator, left, right)

    def binary(self, op: str, left: Any, right: Any) -> Any:
        if op == "+":
            return _add(left, right)
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op in ("<", ">", "<=", ">="):
            return _compare(left, right, op)
        if op == "instanceof":
            if isinstance(right, HostConstructor) and right.instance_check is not None:
                return bool(right.instance_check(left))
            if is_callable(right):
                return isinstance(left, JSObject) and left.class_name == getattr(right, "name", None)
            raise _type_error("Right-hand side of 'instanceof' is not callable")
        if op == "in":
            name = to_property_key(left)
            if isinstance(right, dict):
                return name in right
            if isinstance(right, list):
                return name == "length" or (name.isdigit() and int(name) < len(right))
            raise _type_error(f"Cannot use 'in' operator to search for '{name}' in {to_string(right)}")
        return _numeric_binary(op, left, right)

    async def _eval_Unary(self, node: Node, scope: Scope) -> Any:
        op = node.operator
        argument = node.argument
        if op == "typeof":
            if argument.kind == "Identifier" and scope.find(argument.name) is None:
                return "undefined"
            return type_of(await self.evaluate(argument, scope))
        if op == "delete":
            if argument.kind == "Member":
                obj = await self.evaluate(argument.object, scope)
                key = argument.property.value if not argument.computed else await self.evaluate(argument.property, scope)
                if isinstance(obj, dict):
                    obj.pop(to_property_key(key), None)
                elif isinstance(obj, list):
                    name = to_property_key(key)
                    if name.isdigit() and int(name) < len(obj):
                        obj[int(name)] = UNDEFINED
            return True
        value = await self.evaluate(argument, scope)
        if op == "!":
            return not to_boolean(value)
        if op == "-":
            number = to_number(value)
            return -number if number != 0 else (-0.0 if isinstance(number, float) else 0)
        if op == "+":
            return to_number(value)
        if op == "~":
            return ~to_int32(value)
        if op == "void":
            return UNDEFINED
        raise _type_error(f"不支持的运算符 {op}")

    async def _reference(self, target: Node, scope: Scope):
        """求出赋值目标的 (读取函数, 写入函数)，对象与键只求值一次。"""
        if target.kind == "Identifier":
            name = target.name

            async def read():
                return await self._eval_Identifier(target, scope)

            def write(value):
                self.assign(name, value, scope)

            return read, write
        obj = await self.evaluate(target.object, scope)
        key = target.property.value if not target.computed else await self.evaluate(target.property, scope)

        async def read_member():
            return self.get_member(obj, key)

        def write_member(value):
            self.set_member(obj, key, value)

        return read_member, write_member

    async def _eval_Assign(self, node: Node, scope: Scope) -> Any:
        op = node.operator
        if op == "=":
            value = await self.evaluate(node.value, scope)
            if node.target.kind == "Identifier" and isinstance(value, JSFunction) and not value.name:
                value.name = node.target.name
            await self.bind(node.target, value, scope, None)
            return value
        read, write = await self._reference(node.target, scope)
        current = await read()
        if op in ("&&=", "||=", "??="):
            if op == "&&=" and not to_boolean(current):
                return current
            if op == "||=" and to_boolean(current):
                return current
            if op == "??=" and not is_nullish(current):
                return current
            value = await self.evaluate(node.value, scope)
        else:
            value = self.binary(op[:-1], current, await self.evaluate(node.value, scope))
        write(value)
        return value

    async def _eval_Update(self, node: Node, scope: Scope) -> Any:
        read, write = await self._reference(node.target, scope)
        old = to_number(await read())
        new = _arith(old + 1) if node.operator == "++" else _arith(old - 1)
        write(new)
        return new if node.prefix else old

    async def _eval_Member(self, node: Node, scope: Scope) -> Any:
        obj = await self.evaluate(node.object, scope)
        if node.optional and is_nullish(obj):
            raise _SHORT_CIRCUIT
        key = node.property.value if not node.computed else await self.evaluate(node.property, scope)
        return self.get_member(obj, key)

    async def _eval_Chain(self, node: Node, scope: Scope) -> Any:
        try:
            return await self.evaluate(node.expression, scope)
        except _ShortCircuit:
            return UNDEFINED

    async def _evaluate_arguments(self, nodes: List[Node], scope: Scope) -> List[Any]:
        args: List[Any] = []
        for arg in nodes:
            if arg.kind == "Spread":
                args.extend(self.iterate(await self.evaluate(arg.argument, scope)))
            else:
                args.append(await self.evaluate(arg, scope))
        return args

    async def _eval_Call(self, node: Node, scope: Scope) -> Any:
        callee = node.callee
        if callee.kind == "Member":
            this = await self.evaluate(callee.object, scope)
            if callee.optional and is_nullish(this):
                raise _SHORT_CIRCUIT
            key = callee.property.value if not callee.computed else await self.evaluate(callee.property, scope)
            func = self.get_member(this, key)
        else:
            this = UNDEFINED
            func = await self.evaluate(callee, scope)
        if node.optional and is_nullish(func):
            raise _SHORT_CIRCUIT
        if not is_callable(func):
            raise _type_error(f"{_describe(callee)} is not a function")
        args = await self._evaluate_arguments(node.arguments, scope)
        return await self.call(func, this, args)

    async def _eval_New(self, node: Node, scope: Scope) -> Any:
        constructor = await self.evaluate(node.callee, scope)
        args = await self._evaluate_arguments(node.arguments, scope)
        if isinstance(constructor, HostConstructor) and constructor.construct is not None:
            self.tick()
            try:
                result = constructor.construct(self, args)
                if inspect.isawaitable(result):
                    result = await result
            except (JSThrow, ScriptAbort):
                raise
            except Exception as exc:
                raise JSThrow(make_error("Error", str(exc)))
            return result
        if isinstance(constructor, JSFunction) and not constructor.is_arrow and not constructor.is_async:
            instance = JSObject(class_name=constructor.name or "Object")
            result = await self.call(constructor, instance, args)
            return result if isinstance(result, dict) else instance
        raise _type_error(f"{_describe(node.callee)} is not a constructor")

    async def _eval_Await(self, node: Node, scope: Scope) -> Any:
        value = await self.evaluate(node.argument, scope)
        if isinstance(value, JSPromise):
            return await value.wait()
        return value

    async def _eval_Spread(self, node: Node, scope: Scope) -> Any:
        raise JSThrow(make_error("SyntaxError", "Unexpected spread"))
