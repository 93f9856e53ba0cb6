"""
Scripting Hook

Lets a layer script filter and restyle features. The adapter only talks to a
ScriptEngine; the bundled PythonScriptEngine runs script text that defines a
`process()` function, for example:

    def process():
        if map_layer.attributes["kind"] == "river":
            map_renderer.set_property("stroke-color", "#3366cc")
        return map_renderer.check_zoom(5, 14)

Script state is not shared between threads: the adapter keeps one engine per
worker thread, compiled once per run on that thread.

Scripts are trusted code. PythonScriptEngine executes them with full
interpreter privileges in the renderer process, so job files and the scripts
they name must come from the same trusted source as the renderer itself.
"""

import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import structlog

from ..errors import ScriptError
from .styling import DrawSettings


class RendererView:
    """The `map_renderer` object seen by scripts."""

    def __init__(self, zoom: int = 0, time_value: float = 0.0, layer_index: int = 0):
        self.zoom = zoom
        self.time = time_value
        self.layer_index = layer_index
        self._settings: Optional[DrawSettings] = None

    def check_zoom(self, zoom_min: int = 0, zoom_max: int = 128) -> bool:
        return zoom_min <= self.zoom <= zoom_max

    def set_property(self, name: str, value: Any) -> None:
        if self._settings is None:
            raise RuntimeError("set_property called outside of process()")
        self._settings.set_property(name, value)

    def get_property(self, name: str) -> Any:
        if self._settings is None:
            raise RuntimeError("get_property called outside of process()")
        return getattr(self._settings, name.replace("-", "_"))


class LayerView:
    """The `map_layer` object seen by scripts."""

    def __init__(self, name: str):
        self.name = name
        self.row = -1
        self.attributes: Dict[str, Any] = {}


class ScriptEngine(ABC):
    """Minimal interface of an embedded scripting engine."""

    @abstractmethod
    def load(self, source: str, name: str) -> None:
        """Compile and run the script's top level once."""

    @abstractmethod
    def set_context(self, renderer: RendererView, layer: LayerView) -> None:
        """Expose the renderer and layer views as script globals."""

    @abstractmethod
    def set_attributes(self, row: int, attributes: Dict[str, Any], settings: DrawSettings) -> None:
        """Expose the attributes of the next feature and the settings it may mutate."""

    @abstractmethod
    def call(self, function_name: str) -> bool:
        """Call a script function and return its boolean result."""

    @abstractmethod
    def read_mutated_settings(self) -> DrawSettings:
        """The settings after the last call."""


class PythonScriptEngine(ScriptEngine):
    """Runs layer scripts written in Python."""

    def __init__(self):
        self.namespace: Dict[str, Any] = {}
        self._renderer: Optional[RendererView] = None
        self._layer: Optional[LayerView] = None
        self._settings: Optional[DrawSettings] = None

    def load(self, source: str, name: str) -> None:
        try:
            code = compile(source, f"<script:{name}>", "exec")
        except SyntaxError as e:
            raise ScriptError(f"Script does not compile: {e}", layer=name) from e

        self.namespace = {"__name__": f"layer_script_{name}"}
        try:
            exec(code, self.namespace)
        except Exception as e:
            raise ScriptError(f"Script top level failed: {e}", layer=name) from e

        if not callable(self.namespace.get("process")):
            raise ScriptError("Script does not define process()", layer=name)

    def set_context(self, renderer: RendererView, layer: LayerView) -> None:
        self._renderer = renderer
        self._layer = layer
        self.namespace["map_renderer"] = renderer
        self.namespace["map_layer"] = layer

    def set_attributes(self, row: int, attributes: Dict[str, Any], settings: DrawSettings) -> None:
        self._layer.row = row
        self._layer.attributes = attributes
        self._settings = settings
        self._renderer._settings = settings

    def call(self, function_name: str) -> bool:
        function: Callable = self.namespace.get(function_name)
        if function is None:
            raise ScriptError(f"Script function {function_name}() missing", layer=self._layer.name)
        try:
            result = function()
        except Exception as e:
            raise ScriptError(f"{function_name}() raised {type(e).__name__}: {e}", layer=self._layer.name) from e
        if not isinstance(result, bool):
            raise ScriptError(
                f"{function_name}() must return a bool, got {type(result).__name__}",
                layer=self._layer.name
            )
        return result

    def read_mutated_settings(self) -> DrawSettings:
        return self._settings


def script_value(value: Any) -> Any:
    """Convert a database or dataframe value into a plain script value."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    item = getattr(value, "item", None)
    if callable(item):
        # numpy scalars
        try:
            return item()
        except (TypeError, ValueError):
            return value
    return value


class ScriptHookAdapter:
    """
    Connects one layer's script to the render pipeline.

    Args:
        layer_name: Layer name, exposed as map_layer.name
        source: Script text
        engine_factory: Creates an engine for each worker thread
    """

    def __init__(
        self,
        layer_name: str,
        source: str,
        engine_factory: Callable[[], ScriptEngine] = PythonScriptEngine
    ):
        self.layer_name = layer_name
        self.source = source
        self.engine_factory = engine_factory
        self._local = threading.local()
        self.logger = structlog.get_logger(component="ScriptHookAdapter", layer=layer_name)

    def prepare(self, layer_index: int, zoom: int, time_value: float, feature_count_hint: int = 0) -> float:
        """
        Make the calling thread's engine ready for a batch of features.

        The script is compiled once per thread; later calls only refresh the
        renderer view. Returns the preparation time in seconds.
        """
        start = time.perf_counter()
        state = getattr(self._local, "state", None)

        if state is None:
            engine = self.engine_factory()
            engine.load(self.source, self.layer_name)
            renderer = RendererView()
            layer = LayerView(self.layer_name)
            engine.set_context(renderer, layer)
            state = (engine, renderer, layer)
            self._local.state = state
            self.logger.debug("Script compiled", thread=threading.current_thread().name)

        _, renderer, _ = state
        renderer.zoom = zoom
        renderer.time = time_value
        renderer.layer_index = layer_index

        self.logger.debug("Script prepared", zoom=zoom, feature_count=feature_count_hint)
        return time.perf_counter() - start

    def evaluate(self, row: int, attributes: Dict[str, Any], settings: DrawSettings) -> bool:
        """
        Run process() for one feature.

        Args:
            row: Row index of the feature within the current batch
            attributes: Typed attribute columns, without the geometry column
            settings: Fresh copy of the layer settings, mutated in place

        Returns:
            True to render the feature, False to skip it

        Raises:
            ScriptError: If the script fails for this feature
        """
        state = getattr(self._local, "state", None)
        if state is None:
            raise ScriptError("Script evaluated before prepare()", layer=self.layer_name)

        engine, _, _ = state
        engine.set_attributes(row, {k: script_value(v) for k, v in attributes.items()}, settings)
        result = engine.call("process")

        mutated = engine.read_mutated_settings()
        if mutated is not settings:
            settings.__dict__.update(mutated.__dict__)
        return result
