from __future__ import annotations

import asyncio
import inspect
import time
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from . import pharmacy_mock
from .events import FunctionCallRequest
from .logging import RichLogger

ToolHandler = Callable[..., Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class ToolRouter:
    """
    Dispatches model function calls to domain handlers by name.

    Handlers take the call's args as keyword arguments and return a JSON-able dict
    (sync or async). Unknown names, bad arguments and handler failures come back as
    {"error": ...} so the model can recover in conversation.
    """

    def __init__(self, handlers: Optional[Dict[str, ToolHandler]] = None, timeout_s: float = 10.0):
        self._handlers: Dict[str, ToolHandler] = dict(handlers) if handlers is not None else default_handlers()
        self.timeout_s = timeout_s

    def register(self, name: str, handler: ToolHandler):
        self._handlers[name] = handler

    @property
    def names(self):
        return sorted(self._handlers)

    async def dispatch(self, req: FunctionCallRequest) -> Dict[str, Any]:
        handler = self._handlers.get(req.name)
        print(RichLogger.line(RichLogger.tool_call(req.name, req.args)))
        if handler is None:
            print(RichLogger.line(f"❓ Unknown Tool: {req.name}"))
            return {"error": f"unknown function {req.name!r}"}

        t0 = time.time()
        try:
            out = handler(**req.args)
            if inspect.isawaitable(out):
                out = await asyncio.wait_for(out, timeout=self.timeout_s)
        except TypeError as e:
            return {"error": f"invalid arguments for {req.name}: {e}"}
        except asyncio.TimeoutError:
            return {"error": f"{req.name} timed out"}
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(RichLogger.line(RichLogger.error(f"tool {req.name} failed: {e!r}")))
            traceback.print_exc()
            return {"error": f"{req.name} failed: {e}"}

        print(RichLogger.line(RichLogger.timing(f"tool {req.name}", (time.time() - t0) * 1000)))
        return out if isinstance(out, dict) else {"result": out}


def default_handlers() -> Dict[str, ToolHandler]:
    return {
        "refill_service.placeRefill": pharmacy_mock.place_refill,
        "drug_info.checkInteractions": pharmacy_mock.check_interactions,
        "drug_info.getAdministrationGuide": pharmacy_mock.get_administration_guide,
    }
