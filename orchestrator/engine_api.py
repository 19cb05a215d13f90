"""
Typed session over the bridge: one method per engine tool.

Everything the orchestrator asks of the engine goes through EngineSession,
so handlers never build raw command documents.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from .bridge_client import BridgeResult, CallClass

logger = logging.getLogger(__name__)

CROP_MASK_MARKER = "crop_mask"


@dataclass(frozen=True)
class ImageInfo:
    id: str
    width: int = 0
    height: int = 0
    channels: int = 1
    is_color: bool = False
    file_path: Optional[str] = None

    @classmethod
    def from_outputs(cls, d: dict) -> "ImageInfo":
        channels = int(d.get("channels", 1) or 1)
        return cls(
            id=str(d["id"]),
            width=int(d.get("width", 0) or 0),
            height=int(d.get("height", 0) or 0),
            channels=channels,
            is_color=bool(d.get("isColor", channels >= 3)),
            file_path=d.get("filePath"),
        )


@dataclass(frozen=True)
class ChannelStats:
    median: float
    mad: float
    minimum: float
    maximum: float
    mean: float = 0.0
    std_dev: float = 0.0


@dataclass(frozen=True)
class ImageStats:
    channels: tuple[ChannelStats, ...] = field(default_factory=tuple)

    @property
    def is_color(self) -> bool:
        return len(self.channels) >= 3

    def _avg(self, attr: str) -> float:
        if not self.channels:
            return 0.0
        return sum(getattr(c, attr) for c in self.channels) / len(self.channels)

    @property
    def median(self) -> float:
        return self._avg("median")

    @property
    def mad(self) -> float:
        return self._avg("mad")

    @property
    def minimum(self) -> float:
        return min((c.minimum for c in self.channels), default=0.0)

    @property
    def maximum(self) -> float:
        return max((c.maximum for c in self.channels), default=0.0)

    def weighted(self, weights: Sequence[float]) -> ChannelStats:
        """Combine per-channel statistics with the given weights (e.g. luminance)."""
        if not self.is_color:
            return self.channels[0]
        chans = self.channels[:len(weights)]
        wsum = float(sum(weights[:len(chans)]))

        def w(attr: str) -> float:
            return sum(wi * getattr(c, attr) for wi, c in zip(weights, chans)) / wsum

        return ChannelStats(
            median=w("median"),
            mad=w("mad"),
            minimum=w("minimum"),
            maximum=w("maximum"),
            mean=w("mean"),
            std_dev=w("std_dev"),
        )


def _parse_stats(outputs: dict) -> ImageStats:
    rows = outputs.get("statistics") or []
    chans = []
    for r in rows:
        chans.append(
            ChannelStats(
                median=float(r.get("median", 0.0)),
                mad=float(r.get("mad", 0.0)),
                minimum=float(r.get("min", 0.0)),
                maximum=float(r.get("max", 0.0)),
                mean=float(r.get("mean", 0.0)),
                std_dev=float(r.get("stdDev", 0.0)),
            )
        )
    return ImageStats(tuple(chans))


class EngineSession:
    """
    Façade over a bridge client.

    `client` is anything with BridgeClient.send's signature.
    """

    def __init__(self, client):
        self.client = client

    def _call(
        self,
        tool: str,
        parameters: Optional[dict[str, Any]] = None,
        target_view: Optional[str] = None,
        process: str = "",
        call_class: CallClass = CallClass.SHORT,
    ) -> BridgeResult:
        result = self.client.send(
            tool,
            process=process,
            parameters=parameters or {},
            execute_method="executeOn" if target_view else "executeGlobal",
            target_view=target_view,
            call_class=call_class,
        )
        return result.raise_for_status()

    # -- image management ------------------------------------------------

    def list_images(self) -> list[ImageInfo]:
        res = self._call("list_open_images")
        return [ImageInfo.from_outputs(d) for d in res.outputs.get("images", [])]

    def image_ids(self) -> set[str]:
        return {i.id for i in self.list_images()}

    def open_image(self, file_path: str) -> ImageInfo:
        """Open a file; side-car crop masks the engine opens along with it are closed."""
        before = self.image_ids()
        res = self._call("open_image", {"filePath": str(file_path)})
        info = ImageInfo.from_outputs(res.outputs)
        for extra in self.image_ids() - before - {info.id}:
            if CROP_MASK_MARKER in extra:
                logger.debug(f"closing side-car image {extra}")
                self.close_image(extra)
        return info

    def close_image(self, view_id: str) -> None:
        self._call("close_image", {"viewId": view_id})

    def save_image(self, view_id: str, file_path: str, overwrite: bool = True) -> str:
        """Persist an image. Returns the view id after saving, which the engine may have changed."""
        res = self._call("save_image", {"viewId": view_id, "filePath": str(file_path), "overwrite": overwrite})
        return str(res.outputs.get("id") or view_id)

    def rename_image(self, view_id: str, new_id: str) -> str:
        res = self._call("rename_image", {"viewId": view_id, "newId": new_id})
        return str(res.outputs.get("id") or new_id)

    def clone_image(self, view_id: str, new_id: str) -> str:
        res = self._call("clone_image", {"viewId": view_id, "newId": new_id})
        return str(res.outputs.get("id") or new_id)

    def copy_astrometry(self, source_id: str, target_id: str) -> None:
        self._call("copy_astrometry", {"sourceId": source_id, "targetId": target_id})

    def purge_history(self, view_id: str) -> None:
        self._call("purge_history", {"viewId": view_id})

    def new_images_since(self, before: Iterable[str]) -> list[str]:
        before = set(before)
        return sorted(self.image_ids() - before)

    # -- measurement -----------------------------------------------------

    def statistics(self, view_id: str, rect: Optional[Sequence[int]] = None) -> ImageStats:
        """Per-channel median/MAD/min/max, optionally inside rect = (x0, y0, x1, y1)."""
        params: dict[str, Any] = {"viewId": view_id}
        if rect is not None:
            params["rect"] = [int(v) for v in rect]
        res = self._call("get_image_statistics", params)
        return _parse_stats(res.outputs)

    # -- processing ------------------------------------------------------

    def pixel_math(
        self,
        view_id: str,
        expression: str | Sequence[str],
        symbols: str = "",
        truncate: bool = True,
        use_64bit: bool = True,
    ) -> None:
        """Run PixelMath on a view. A sequence gives one expression per RGB channel."""
        params: dict[str, Any] = {
            "symbols": symbols,
            "truncate": truncate,
            "use64BitWorkingImage": use_64bit,
            "createNewImage": False,
        }
        params.update(_expression_params(expression))
        self._call("run_pixelmath", params, target_view=view_id, process="PixelMath")

    def create_image(
        self,
        new_id: str,
        expression: str | Sequence[str],
        width: int,
        height: int,
        color: bool,
        symbols: str = "",
    ) -> str:
        """Evaluate PixelMath globally into a new image. Returns the id the engine assigned."""
        before = self.image_ids()
        params: dict[str, Any] = {
            "symbols": symbols,
            "truncate": True,
            "use64BitWorkingImage": True,
            "createNewImage": True,
            "newImageId": new_id,
            "width": int(width),
            "height": int(height),
            "colorSpace": "RGB" if color else "Gray",
        }
        params.update(_expression_params(expression))
        res = self._call("run_pixelmath", params, process="PixelMath")
        created = res.outputs.get("id")
        if created:
            return str(created)
        fresh = self.new_images_since(before)
        return fresh[0] if len(fresh) == 1 else new_id

    def execute_process(self, view_id: str, process: str, parameters: Optional[dict[str, Any]] = None) -> BridgeResult:
        """Run an engine process on a view. Long call class."""
        return self._call(
            "execute_process",
            {"process": process, "parameters": parameters or {}},
            target_view=view_id,
            process=process,
            call_class=CallClass.LONG,
        )

    def run_script(self, code: str) -> str:
        res = self._call("run_script", {"code": code}, call_class=CallClass.LONG)
        return str(res.outputs.get("consoleOutput", ""))


def _expression_params(expression: str | Sequence[str]) -> dict[str, Any]:
    if isinstance(expression, str):
        return {"expression": expression, "useSingleExpression": True}
    exprs = list(expression)
    if len(exprs) != 3:
        raise ValueError("per-channel PixelMath needs exactly three expressions")
    return {
        "expression": exprs[0],
        "expression1": exprs[1],
        "expression2": exprs[2],
        "useSingleExpression": False,
    }
