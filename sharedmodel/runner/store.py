# sharedmodel/runner/store.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from sharedmodel.codec.state_codec import DecodeOptions, decode_model, encode_model
from sharedmodel.core.schemas import SessionPath, SharedModel, State

logger = logging.getLogger(__name__)

SESSION_FILE_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"


@dataclass(frozen=True)
class StoreConfig:
    """
    Where shared models live on disk.

    Layout:

      <shared_model_folder>/<product>/shared-state.json
      <data_dir>/<product>/product.yaml
      <data_dir>/<product>/session-state-<YYYY-MM-DD_HH-MM-SS>.json

    shared_model_folder defaults to data_dir.
    """
    data_dir: Path = Path("data")
    shared_model_folder: Optional[Path] = None
    model_filename: str = "shared-state.json"
    properties_filename: str = "product.yaml"
    decode: DecodeOptions = field(default_factory=DecodeOptions)

    @property
    def shared_root(self) -> Path:
        return Path(self.shared_model_folder) if self.shared_model_folder is not None else Path(self.data_dir)


def _write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class SharedModelStore:
    """
    File persistence for shared models, session snapshots and product
    properties. Read failures come back as None, write failures as False.
    """

    def __init__(self, cfg: Optional[StoreConfig] = None) -> None:
        self.cfg = cfg or StoreConfig()

    # ---------------- paths ----------------

    def product_dir(self, product: str) -> Path:
        base = Path(self.cfg.data_dir)
        return base / product if product else base

    def shared_model_path(self, product: str) -> Path:
        return self.cfg.shared_root / product / self.cfg.model_filename

    def session_model_path(self, product: str, when: Optional[datetime] = None) -> Path:
        stamp = (when or datetime.now()).strftime(SESSION_FILE_TIME_FORMAT)
        return self.product_dir(product) / f"session-state-{stamp}.json"

    def properties_path(self, product: str) -> Path:
        return self.product_dir(product) / self.cfg.properties_filename

    def products(self) -> List[str]:
        base = Path(self.cfg.data_dir)
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_dir())

    # ---------------- raw documents ----------------

    def load(self, path: Path) -> Optional[Dict[str, Any]]:
        path = Path(path)
        if not path.exists():
            logger.info("[STORE] no model at %s, starting empty", path)
            return None
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("[STORE] unable to read %s: %s: %s", path, type(e).__name__, e)
            return None
        if not isinstance(doc, dict):
            logger.error("[STORE] %s does not hold a JSON object", path)
            return None
        return doc

    def save(self, path: Path, doc: Dict[str, Any]) -> bool:
        path = Path(path)
        try:
            _write_json(path, doc)
        except OSError as e:
            logger.error("[STORE] unable to write %s: %s", path, e)
            return False
        logger.info("[STORE] saved %s", path)
        return True

    # ---------------- models ----------------

    def load_model(self, path: Path) -> Optional[SharedModel]:
        """None when there is no readable document. TreeDecodeError when there is one but it is malformed."""
        doc = self.load(path)
        if doc is None:
            return None
        return decode_model(doc, self.cfg.decode)

    def save_model(
        self,
        path: Path,
        state: State,
        *,
        product: str,
        paths: Sequence[SessionPath] = (),
    ) -> bool:
        try:
            doc = encode_model(state, product=product, paths=paths)
        except ValueError as e:
            logger.error("[STORE] unable to encode state tree %s: %s", state.id, e)
            return False
        return self.save(path, doc)

    # ---------------- product properties ----------------

    def load_properties(self, product: str) -> Dict[str, Any]:
        path = self.properties_path(product)
        if not path.exists():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning("[STORE] unable to read properties %s: %s", path, e)
            return {}
        return dict(data) if isinstance(data, dict) else {}

    def save_properties(self, product: str, properties: Dict[str, Any]) -> bool:
        path = self.properties_path(product)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(yaml.safe_dump(dict(properties), sort_keys=True, allow_unicode=True), encoding="utf-8")
        except (OSError, yaml.YAMLError) as e:
            logger.error("[STORE] unable to write properties %s: %s", path, e)
            return False
        return True
