"""
插件沙箱 - 在受限解释器中执行用户插件脚本。

脚本使用 JavaScript 子集编写，只能访问注入的能力对象与内建对象，
无法触达 Python 运行时、文件系统或网络（除非能力中显式提供）。

用法:
    result = await run_script(code, {"sendText": send_text}, timeout_sec=60)
"""

import asyncio
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from .interpreter import Interpreter
from .parser import Node, parse
from .values import (
    UNDEFINED,
    JSPromise,
    JSThrow,
    SandboxError,
    ScriptAbort,
    ScriptError,
    ScriptSyntaxError,
    ScriptTimeout,
    error_message,
    is_callable,
    to_python,
)

logger = logging.getLogger(__name__)

__all__ = [
    "run_script",
    "compile_script",
    "SandboxError",
    "ScriptSyntaxError",
    "ScriptError",
    "ScriptAbort",
    "ScriptTimeout",
]


@lru_cache(maxsize=128)
def compile_script(code: str) -> Node:
    """解析脚本源码；相同源码复用同一棵语法树。"""
    return parse(code)


async def run_script(
    code: str,
    capabilities: Dict[str, Any],
    entry: str = "main",
    timeout_sec: float = 60.0,
    max_steps: int = 200000,
    script_logger: Optional[logging.Logger] = None,
) -> Any:
    """
    执行脚本并调用入口函数。

    Returns:
        入口函数的返回值（已转换为 Python 值）

    Raises:
        ScriptSyntaxError: 语法错误
        ScriptError: 脚本抛出未捕获异常，或未定义入口函数
        ScriptTimeout: 执行超时
        ScriptAbort: 超出步数或调用深度限制
    """
    try:
        program = compile_script(code)
    except RecursionError:
        raise ScriptAbort("脚本嵌套过深")
    interp = Interpreter(capabilities, max_steps=max_steps, script_logger=script_logger or logger)

    async def execute() -> Any:
        await interp.run_program(program)
        main = interp.lookup(entry)
        if not is_callable(main):
            raise ScriptError(f"插件未定义 {entry}() 函数")
        result = await interp.call(main, UNDEFINED, [])
        if isinstance(result, JSPromise):
            result = await result.wait()
        await interp.drain()
        return to_python(result)

    try:
        return await asyncio.wait_for(execute(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        raise ScriptTimeout(f"插件执行超时 ({timeout_sec}s)")
    except JSThrow as exc:
        raise ScriptError(error_message(exc.value), to_python(exc.value))
    except RecursionError:
        raise ScriptAbort("调用栈过深")
    finally:
        interp.cancel_all()
