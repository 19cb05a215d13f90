import re
import uuid
from pathlib import Path

import numpy as np
import pytest
from astropy.io import fits

from orchestrator.bridge_client import BridgeResult
from orchestrator.engine_api import EngineSession


_CHANNEL_REF = re.compile(r"(\$T|\b[A-Za-z_][A-Za-z0-9_]*)\[(\d)\]")
_NAME = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")


def _min(*args):
    if len(args) == 1:
        return np.min(args[0])
    out = args[0]
    for a in args[1:]:
        out = np.minimum(out, a)
    return out


def _max(*args):
    if len(args) == 1:
        return np.max(args[0])
    out = args[0]
    for a in args[1:]:
        out = np.maximum(out, a)
    return out


def _mtf(m, x):
    x = np.asarray(x, dtype=np.float64)
    den = (2 * m - 1) * x - m
    with np.errstate(all="ignore"):
        return np.where(np.abs(den) < 1e-15, x, (m - 1) * x / den)


_FUNCS = {
    "iif": lambda c, a, b: np.where(c, a, b),
    "ln": np.log,
    "exp": np.exp,
    "abs": np.abs,
    "sqrt": np.sqrt,
    "min": _min,
    "max": _max,
    "med": lambda x: float(np.median(x)),
    "mean": lambda x: float(np.mean(x)),
    "mad": lambda x: float(np.median(np.abs(x - np.median(x)))),
    "mtf": _mtf,
}


def _sanitize(name: str) -> str:
    s = re.sub(r"[^A-Za-z0-9_]", "_", name) or "img"
    return "_" + s if s[0].isdigit() else s


class FakeEngine:
    """
    In-memory stand-in for the image engine behind the bridge.

    Images are float64 arrays: (H, W) for mono, (3, H, W) for colour.
    PixelMath expressions are evaluated with numpy.
    """

    def __init__(self, rename_on_save=False, crop_mask_on_open=False):
        self.images: dict[str, np.ndarray] = {}
        self.files: dict[str, str] = {}
        self.commands: list[dict] = []
        self.rename_on_save = rename_on_save
        self.crop_mask_on_open = crop_mask_on_open
        self.fail: dict[str, str] = {}
        self.purged: list[str] = []
        self.processes = {
            "HistogramTransformation": self._p_histogram_transformation,
            "LRGBCombination": self._p_lrgb,
            "StarXTerminator": self._p_star_split,
        }

    # -- helpers for tests ----------------------------------------------

    def add_image(self, image_id: str, data) -> str:
        self.images[image_id] = np.array(data, dtype=np.float64)
        return image_id

    def tools(self) -> list[str]:
        return [c["tool"] for c in self.commands]

    def session(self) -> EngineSession:
        return EngineSession(self)

    def _unique(self, base: str) -> str:
        base = _sanitize(base)
        if base not in self.images:
            return base
        i = 1
        while f"{base}{i}" in self.images:
            i += 1
        return f"{base}{i}"

    # -- bridge surface ---------------------------------------------------

    def send(self, tool, process="", parameters=None, execute_method="executeGlobal",
             target_view=None, call_class=None, max_attempts=None):
        params = dict(parameters or {})
        self.commands.append({
            "tool": tool,
            "process": process,
            "parameters": params,
            "targetView": target_view,
            "callClass": call_class,
        })
        cid = str(uuid.uuid4())
        key = params.get("process") if tool == "execute_process" else tool
        if key in self.fail:
            return BridgeResult(id=cid, status="error", error={"message": self.fail[key], "type": "Error"}, tool=tool)
        try:
            outputs = getattr(self, f"_t_{tool}")(params, target_view)
        except (LookupError, ValueError, NameError, SyntaxError, TypeError) as e:
            return BridgeResult(id=cid, status="error", error={"message": str(e), "type": type(e).__name__}, tool=tool)
        return BridgeResult(id=cid, status="success", outputs=outputs or {}, tool=tool)

    def _view(self, view_id):
        if view_id not in self.images:
            raise KeyError(f"Image not found: {view_id}")
        return self.images[view_id]

    def _t_list_open_images(self, params, target):
        out = []
        for i, data in self.images.items():
            color = data.ndim == 3
            out.append({
                "id": i,
                "width": int(data.shape[-1]),
                "height": int(data.shape[-2]),
                "channels": 3 if color else 1,
                "isColor": color,
                "filePath": self.files.get(i),
            })
        return {"images": out}

    def _t_open_image(self, params, target):
        path = params["filePath"]
        if not Path(path).is_file():
            raise ValueError(f"File not found: {path}")
        data = np.array(fits.getdata(path), dtype=np.float64)
        view_id = self._unique(Path(path).stem)
        self.images[view_id] = data
        self.files[view_id] = path
        if self.crop_mask_on_open:
            self.images[self._unique(f"{view_id}_crop_mask")] = np.zeros(data.shape[-2:])
        return {"id": view_id, "width": data.shape[-1], "height": data.shape[-2],
                "channels": 3 if data.ndim == 3 else 1}

    def _t_save_image(self, params, target):
        view_id = params["viewId"]
        data = self._view(view_id)
        path = Path(params["filePath"])
        path.parent.mkdir(parents=True, exist_ok=True)
        fits.writeto(str(path), data, overwrite=True)
        self.files[view_id] = str(path)
        if self.rename_on_save:
            new_id = self._unique(path.stem)
            self.images[new_id] = self.images.pop(view_id)
            self.files[new_id] = self.files.pop(view_id)
            view_id = new_id
        return {"filePath": str(path), "id": view_id}

    def _t_close_image(self, params, target):
        self._view(params["viewId"])
        del self.images[params["viewId"]]
        self.files.pop(params["viewId"], None)
        return {}

    def _t_rename_image(self, params, target):
        old, new = params["viewId"], params["newId"]
        self._view(old)
        if new != old and new in self.images:
            raise ValueError(f"id in use: {new}")
        self.images[new] = self.images.pop(old)
        if old in self.files:
            self.files[new] = self.files.pop(old)
        return {"id": new}

    def _t_clone_image(self, params, target):
        src = self._view(params["viewId"])
        new_id = self._unique(params["newId"])
        self.images[new_id] = src.copy()
        return {"id": new_id}

    def _t_copy_astrometry(self, params, target):
        self._view(params["sourceId"])
        self._view(params["targetId"])
        return {}

    def _t_purge_history(self, params, target):
        self._view(params["viewId"])
        self.purged.append(params["viewId"])
        return {}

    def _t_get_image_statistics(self, params, target):
        data = self._view(params["viewId"])
        chans = data if data.ndim == 3 else data[None]
        rect = params.get("rect")
        rows = []
        for c, ch in enumerate(chans):
            if rect is not None:
                x0, y0, x1, y1 = rect
                ch = ch[y0:y1, x0:x1]
            med = float(np.median(ch))
            rows.append({
                "channel": c,
                "mean": float(np.mean(ch)),
                "median": med,
                "mad": float(np.median(np.abs(ch - med))),
                "stdDev": float(np.std(ch)),
                "min": float(np.min(ch)),
                "max": float(np.max(ch)),
            })
        return {"statistics": rows}

    def _t_run_pixelmath(self, params, target):
        if params.get("useSingleExpression", True):
            exprs = [params["expression"]]
        else:
            exprs = [params["expression"], params["expression1"], params["expression2"]]
        if params.get("createNewImage"):
            h, w = int(params["height"]), int(params["width"])
            color = params.get("colorSpace") == "RGB"
            base = np.zeros((3, h, w)) if color else np.zeros((h, w))
            result = self._evaluate(exprs, base)
            new_id = self._unique(params["newImageId"])
            self.images[new_id] = result
            out_id = new_id
        else:
            result = self._evaluate(exprs, self._view(target))
            self.images[target] = result
            out_id = target
        if params.get("truncate", True):
            self.images[out_id] = np.clip(self.images[out_id], 0.0, 1.0)
        return {"id": out_id} if params.get("createNewImage") else {}

    def _evaluate(self, exprs, base):
        color = base.ndim == 3
        n = 3 if color else 1
        out = []
        for c in range(n):
            expr = exprs[c] if len(exprs) > 1 else exprs[0]
            out.append(self._eval_channel(expr, base, c))
        return np.stack(out) if color else out[0]

    def _eval_channel(self, expr, base, c):
        ns = dict(_FUNCS)
        channel_refs = {}

        def sub_ref(m):
            name, k = m.group(1), int(m.group(2))
            src = base if name == "$T" else self._view(name)
            key = f"__ref{len(channel_refs)}"
            channel_refs[key] = src[k]
            return key

        py = _CHANNEL_REF.sub(sub_ref, expr)
        py = py.replace("$T", "__T")
        ns.update(channel_refs)
        ns["__T"] = base[c] if base.ndim == 3 else base
        for name in set(_NAME.findall(py)):
            if name in self.images:
                img = self.images[name]
                ns[name] = img[c] if img.ndim == 3 else img
        with np.errstate(all="ignore"):
            value = eval(py, {"__builtins__": {}}, ns)
        return np.broadcast_to(np.asarray(value, dtype=np.float64), base.shape[-2:]).copy()

    def _t_execute_process(self, params, target):
        name = params["process"]
        if name not in self.processes:
            raise ValueError(f"unknown process {name}")
        self._view(target)
        return self.processes[name](target, params.get("parameters") or {}) or {}

    def _t_run_script(self, params, target):
        return {"consoleOutput": "ok"}

    # -- processes --------------------------------------------------------

    def _p_histogram_transformation(self, view_id, p):
        shadows, midtones, highlights = p["H"][3][:3]
        data = self.images[view_id]
        x = np.clip((data - shadows) / (highlights - shadows), 0.0, 1.0)
        self.images[view_id] = _mtf(midtones, x)

    def _p_lrgb(self, view_id, p):
        lum = self._view(p["channelL"][1])
        data = self.images[view_id]
        cur = 0.2126 * data[0] + 0.7152 * data[1] + 0.0722 * data[2]
        with np.errstate(all="ignore"):
            ratio = np.where(cur > 1e-12, lum / cur, 1.0)
        self.images[view_id] = np.clip(data * ratio, 0.0, 1.0)

    def _p_star_split(self, view_id, p):
        data = self.images[view_id]
        stars = np.where(data > 0.9, data, 0.0)
        self.images[view_id] = data - stars
        self.images[self._unique(f"{view_id}_stars")] = stars


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def session(engine):
    return engine.session()


def write_fits(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fits.writeto(str(path), np.asarray(data, dtype=np.float64), overwrite=True)
    return path


def gradient_image(h=64, w=64, slope=0.002, level=0.1, seed=0):
    rng = np.random.default_rng(seed)
    xx = np.arange(w)[None, :].repeat(h, axis=0)
    return level + slope * xx + rng.normal(0.0, 0.001, (h, w))
