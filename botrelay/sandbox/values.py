"""
脚本运行时的值模型与类型转换。

JS 值与 Python 值的对应关系：
    undefined -> UNDEFINED      null    -> None
    boolean   -> bool           number  -> int / float
    string    -> str            object  -> dict (JSObject)
    array     -> list           function -> JSFunction / HostFunction
"""

import asyncio
import inspect
import json
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import PluginError

__all__ = [
    "UNDEFINED",
    "SandboxError",
    "ScriptSyntaxError",
    "ScriptError",
    "ScriptAbort",
    "ScriptTimeout",
    "JSThrow",
    "JSObject",
    "JSFunction",
    "HostFunction",
    "HostConstructor",
    "JSDate",
    "JSRegExp",
    "JSPromise",
    "ERROR_TYPES",
    "make_error",
    "error_message",
    "is_callable",
    "is_nullish",
    "is_number",
    "to_boolean",
    "to_number",
    "to_string",
    "to_int32",
    "to_property_key",
    "number_to_string",
    "power",
    "type_of",
    "strict_equals",
    "loose_equals",
    "to_python",
    "to_js",
    "json_stringify",
    "json_parse",
    "call_limit_args",
]


class _Undefined:
    __slots__ = ()

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


# ═══════════════════════════════════════════════════════════════════
#                               异常
# ═══════════════════════════════════════════════════════════════════


class SandboxError(PluginError):
    """插件脚本执行失败。"""


class ScriptSyntaxError(SandboxError):
    """脚本语法错误。"""


class ScriptError(SandboxError):
    """脚本抛出了未捕获的异常。"""

    def __init__(self, message: str, value: Any = None) -> None:
        super().__init__(message)
        self.value = value


class ScriptAbort(SandboxError):
    """超出执行步数等硬性限制，脚本内不可捕获。"""


class ScriptTimeout(ScriptAbort):
    """脚本执行超时。"""


class JSThrow(Exception):
    """脚本内 throw 的值，在解释器内部传播。"""

    def __init__(self, value: Any) -> None:
        super().__init__(error_message(value))
        self.value = value


# ═══════════════════════════════════════════════════════════════════
#                               对象类型
# ═══════════════════════════════════════════════════════════════════


class JSObject(dict):
    """普通对象。class_name 用于区分 Error 等内建对象。"""

    __slots__ = ("class_name",)

    def __init__(self, *args: Any, class_name: str = "Object", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.class_name = class_name


ERROR_TYPES = ("Error", "TypeError", "RangeError", "SyntaxError", "ReferenceError", "URIError")


def make_error(name: str, message: Any = "") -> JSObject:
    text = "" if message is UNDEFINED else to_string(message)
    return JSObject(name=name, message=text, stack=f"{name}: {text}", class_name=name)


def error_message(value: Any) -> str:
    if isinstance(value, dict) and "message" in value:
        name = value.get("name")
        message = to_string(value.get("message"))
        if isinstance(value, JSObject) and value.class_name in ERROR_TYPES and name and name != "Error":
            return f"{to_string(name)}: {message}"
        return message
    return to_string(value)


class JSFunction:
    """脚本中定义的函数（闭包）。"""

    __slots__ = ("node", "scope", "this", "name", "properties")

    def __init__(self, node: Any, scope: Any, this: Any = UNDEFINED) -> None:
        self.node = node
        self.scope = scope
        self.this = this
        self.name = node.name or ""
        self.properties: Dict[str, Any] = {}

    @property
    def is_async(self) -> bool:
        return self.node.is_async

    @property
    def is_arrow(self) -> bool:
        return self.node.is_arrow

    def __repr__(self) -> str:
        return f"<JSFunction {self.name or 'anonymous'}>"


class HostFunction:
    """
    暴露给脚本的 Python 函数。

    raw=True 时以 fn(interp, this, args) 调用；
    否则以 fn(*args) 调用，多余实参会被截断。
    """

    __slots__ = ("fn", "name", "raw", "max_args", "properties")

    def __init__(self, fn: Callable[..., Any], name: str = "", raw: bool = False) -> None:
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "")
        self.raw = raw
        self.max_args: Optional[int] = None if raw else _positional_limit(fn)
        self.properties: Dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"<HostFunction {self.name}>"


class HostConstructor(HostFunction):
    """带静态成员、可被 new 调用的内建构造函数。"""

    __slots__ = ("construct", "instance_check")

    def __init__(
        self,
        fn: Callable[..., Any],
        name: str,
        construct: Optional[Callable[..., Any]] = None,
        instance_check: Optional[Callable[[Any], bool]] = None,
        statics: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(fn, name, raw=True)
        self.construct = construct
        self.instance_check = instance_check
        self.properties = dict(statics or {})


def _positional_limit(fn: Callable[..., Any]) -> Optional[int]:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    count = 0
    for param in signature.parameters.values():
        if param.kind == param.VAR_POSITIONAL:
            return None
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            count += 1
    return count


class JSDate:
    __slots__ = ("ms",)

    def __init__(self, ms: float) -> None:
        self.ms = ms

    @classmethod
    def now(cls) -> "JSDate":
        return cls(time.time() * 1000)

    @property
    def valid(self) -> bool:
        return not (math.isnan(self.ms) or math.isinf(self.ms))

    def local(self) -> datetime:
        return datetime.fromtimestamp(self.ms / 1000)

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.ms / 1000, tz=timezone.utc)

    def iso(self) -> str:
        dt = self.utc()
        return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(self.ms % 1000):03d}Z"

    def __repr__(self) -> str:
        return f"<JSDate {self.ms}>"


class JSRegExp:
    __slots__ = ("source", "flags", "compiled", "last_index")

    def __init__(self, source: str, flags: str = "") -> None:
        self.source = source
        self.flags = flags
        py_flags = 0
        if "i" in flags:
            py_flags |= re.IGNORECASE
        if "m" in flags:
            py_flags |= re.MULTILINE
        if "s" in flags:
            py_flags |= re.DOTALL
        try:
            self.compiled = re.compile(_translate_regex(source), py_flags)
        except re.error as exc:
            raise JSThrow(make_error("SyntaxError", f"Invalid regular expression: /{source}/: {exc}"))
        self.last_index = 0

    @property
    def is_global(self) -> bool:
        return "g" in self.flags

    def __repr__(self) -> str:
        return f"/{self.source}/{self.flags}"


def _translate_regex(source: str) -> str:
    # 命名分组 (?<name>...) -> (?P<name>...)，\d 等写法两边一致
    translated = re.sub(r"\(\?<(?![=!])", "(?P<", source)
    translated = re.sub(r"\\k<(\w+)>", r"(?P=\1)", translated)
    return translated.replace("\\/", "/")


class JSPromise:
    """
    Promise 的最小实现。

    已完成的 Promise 直接保存结果；未完成的由 asyncio.Future 承载。
    """

    __slots__ = ("future",)

    def __init__(self, future: "asyncio.Future") -> None:
        self.future = future

    @classmethod
    def resolved(cls, value: Any) -> "JSPromise":
        if isinstance(value, JSPromise):
            return value
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        return cls(future)

    @classmethod
    def rejected(cls, error: Any) -> "JSPromise":
        future = asyncio.get_running_loop().create_future()
        future.set_exception(JSThrow(error))
        # 避免未 await 时 asyncio 打印告警
        future.add_done_callback(lambda f: f.exception())
        return cls(future)

    async def wait(self) -> Any:
        value = await self.future
        while isinstance(value, JSPromise):
            value = await value.future
        return value

    def __repr__(self) -> str:
        return "<JSPromise>"


# ═══════════════════════════════════════════════════════════════════
#                               类型转换
# ═══════════════════════════════════════════════════════════════════


def is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_callable(value: Any) -> bool:
    return isinstance(value, (JSFunction, HostFunction))


def to_boolean(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


_INT_PREFIXES = {"0x": 16, "0o": 8, "0b": 2}


def _string_to_number(text: str) -> float:
    text = text.strip()
    if not text:
        return 0
    lowered = text.lower()
    sign = 1
    body = lowered
    if body[:1] in "+-" and body[1:] in ("infinity",):
        return math.inf if body[0] == "+" else -math.inf
    if lowered == "infinity":
        return math.inf
    prefix = body[:2]
    if prefix in _INT_PREFIXES:
        try:
            return sign * int(body[2:], _INT_PREFIXES[prefix])
        except ValueError:
            return math.nan
    if lowered in ("nan", "inf", "-inf", "+inf", "+nan", "-nan") or "_" in lowered:
        return math.nan
    try:
        value = float(text)
    except ValueError:
        return math.nan
    if value.is_integer() and abs(value) < 2 ** 53 and "e" not in lowered and "." not in lowered:
        return int(value)
    return value


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0
    if isinstance(value, str):
        return _string_to_number(value)
    if isinstance(value, JSDate):
        return value.ms
    if isinstance(value, list):
        return _string_to_number(to_string(value))
    return math.nan


def to_int32(value: Any) -> int:
    number = to_number(value)
    if isinstance(number, float):
        if math.isnan(number) or math.isinf(number):
            return 0
        number = int(number)
    number &= 0xFFFFFFFF
    return number - 0x100000000 if number >= 0x80000000 else number


def number_to_string(value: float) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        exp = int(exponent)
        if mantissa.endswith(".0"):
            mantissa = mantissa[:-2]
        return f"{mantissa}e{'+' if exp > 0 else '-'}{abs(exp)}"
    return text


def _date_to_string(date: JSDate) -> str:
    if not date.valid:
        return "Invalid Date"
    dt = date.local().astimezone()
    offset = dt.strftime("%z") or "+0000"
    return dt.strftime("%a %b %d %Y %H:%M:%S") + f" GMT{offset}"


def to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_to_string(value)
    if isinstance(value, list):
        return ",".join("" if is_nullish(item) else to_string(item) for item in value)
    if isinstance(value, JSObject) and value.class_name in ERROR_TYPES:
        name = to_string(value.get("name", value.class_name))
        message = to_string(value.get("message", ""))
        return f"{name}: {message}" if message else name
    if isinstance(value, dict):
        return "[object Object]"
    if isinstance(value, JSFunction):
        return f"function {value.name}() {{ [code] }}"
    if isinstance(value, HostFunction):
        return f"function {value.name}() {{ [native code] }}"
    if isinstance(value, JSDate):
        return _date_to_string(value)
    if isinstance(value, JSRegExp):
        return f"/{value.source}/{value.flags}"
    if isinstance(value, JSPromise):
        return "[object Promise]"
    if isinstance(value, (bytes, bytearray)):
        return "[object ArrayBuffer]"
    return str(value)


def to_property_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    return to_string(value)


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "object"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if is_callable(value):
        return "function"
    return "object"


def strict_equals(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, bool) and isinstance(right, bool):
        return left == right
    return left is right


def loose_equals(left: Any, right: Any) -> bool:
    if is_nullish(left) and is_nullish(right):
        return True
    if is_nullish(left) or is_nullish(right):
        return False
    if type_of(left) == type_of(right) and not (isinstance(left, bool) ^ isinstance(right, bool)):
        return strict_equals(left, right)
    if isinstance(left, bool):
        return loose_equals(to_number(left), right)
    if isinstance(right, bool):
        return loose_equals(left, to_number(right))
    if is_number(left) and isinstance(right, str):
        return left == to_number(right)
    if isinstance(left, str) and is_number(right):
        return to_number(left) == right
    left_primitive = isinstance(left, (str, int, float))
    right_primitive = isinstance(right, (str, int, float))
    if left_primitive and not right_primitive:
        return loose_equals(left, to_string(right) if not isinstance(right, JSDate) else right.ms)
    if right_primitive and not left_primitive:
        return loose_equals(to_string(left) if not isinstance(left, JSDate) else left.ms, right)
    return left is right


# ═══════════════════════════════════════════════════════════════════
#                             Python 互转
# ═══════════════════════════════════════════════════════════════════


def to_js(value: Any) -> Any:
    """将宿主返回的 Python 值转换为脚本值。"""
    if value is None or isinstance(value, (bool, str, int, JSObject, JSFunction, HostFunction,
                                            JSDate, JSRegExp, JSPromise, bytes, _Undefined)):
        return value
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 2 ** 53:
            return int(value)
        return value
    if isinstance(value, dict):
        return JSObject({str(k): to_js(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return [to_js(item) for item in value]
    if isinstance(value, bytearray):
        return bytes(value)
    if callable(value):
        return HostFunction(value)
    return to_string(value)


def to_python(value: Any) -> Any:
    """将脚本值转换为普通 Python 值（用于返回给宿主）。"""
    if value is UNDEFINED:
        return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value) if value.is_integer() and abs(value) < 2 ** 53 else value
    if isinstance(value, dict):
        return {k: to_python(v) for k, v in value.items() if v is not UNDEFINED and not is_callable(v)}
    if isinstance(value, list):
        return [to_python(item) for item in value]
    if isinstance(value, JSDate):
        return value.iso() if value.valid else None
    if isinstance(value, JSRegExp):
        return {}
    if is_callable(value) or isinstance(value, JSPromise):
        return None
    return value


def _json_plain(value: Any, in_array: bool) -> Any:
    if value is UNDEFINED or is_callable(value):
        return None if in_array else UNDEFINED
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value) if value.is_integer() and abs(value) < 2 ** 53 else value
    if isinstance(value, JSDate):
        return value.iso() if value.valid else None
    if isinstance(value, list):
        return [_json_plain(item, True) for item in value]
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            plain = _json_plain(item, False)
            if plain is not UNDEFINED:
                result[key] = plain
        return result
    if isinstance(value, (JSRegExp, JSPromise)):
        return {}
    if isinstance(value, (bytes, bytearray)):
        return {}
    return value


def json_stringify(value: Any, indent: Any = UNDEFINED) -> Any:
    plain = _json_plain(value, False)
    if plain is UNDEFINED:
        return UNDEFINED
    if is_number(indent) and indent > 0:
        return json.dumps(plain, ensure_ascii=False, indent=min(int(indent), 10))
    if isinstance(indent, str) and indent:
        return json.dumps(plain, ensure_ascii=False, indent=indent[:10])
    return json.dumps(plain, ensure_ascii=False, separators=(",", ":"))


def json_parse(text: Any) -> Any:
    try:
        return to_js(json.loads(to_string(text)))
    except ValueError as exc:
        raise JSThrow(make_error("SyntaxError", f"Unexpected token in JSON: {exc}"))


def call_limit_args(fn: HostFunction, args: List[Any]) -> List[Any]:
    if fn.max_args is None or len(args) <= fn.max_args:
        return args
    return args[:fn.max_args]


def power(base: float, exponent: float) -> float:
    if isinstance(exponent, float) and math.isnan(exponent):
        return math.nan
    if exponent == 0:
        return 1
    try:
        if isinstance(base, int) and isinstance(exponent, int) and exponent >= 0:
            if abs(base) > 1 and exponent > 4096:
                return math.inf if base > 0 or exponent % 2 == 0 else -math.inf
            return base ** exponent
        result = float(base) ** float(exponent)
    except ZeroDivisionError:
        return math.inf
    except OverflowError:
        return math.inf if base > 0 or float(exponent) % 2 == 0 else -math.inf
    if isinstance(result, complex):
        return math.nan
    return result
