from __future__ import annotations

import hashlib
import json
import logging
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Mapping

from moana.services.launch_config import sanitize_path
from moana.services.volfile_compiler import CompiledVolfiles

logger = logging.getLogger(__name__)


def digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class VolfileStore:
    """
    Writes compiled volfiles and launch configs to their well-known paths.

    Layout under the work directory:
        volfiles/<volume>/<hostname>.vol
        volfiles/<volume>/client.vol
        bricks/<volume>/<hostname>/<sanitized-path>.json

    Files are always rewritten whole; the returned lists name only the files
    whose content changed so callers can redeploy just those.
    """

    def __init__(self, volfile_dir: str | Path, launch_config_dir: str | Path):
        self.volfile_dir = Path(volfile_dir)
        self.launch_config_dir = Path(launch_config_dir)

    def server_volfile_path(self, volume_name: str, hostname: str) -> Path:
        return self.volfile_dir / volume_name / f"{hostname}.vol"

    def client_volfile_path(self, volume_name: str) -> Path:
        return self.volfile_dir / volume_name / "client.vol"

    def launch_config_path(self, volume_name: str, hostname: str, brick_path: str) -> Path:
        return self.launch_config_dir / volume_name / hostname / f"{sanitize_path(brick_path)}.json"

    @staticmethod
    def _write_if_changed(path: Path, text: str) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        changed = not path.exists() or digest(path.read_text(encoding="utf-8")) != digest(text)
        path.write_text(text, encoding="utf-8")
        return changed

    def write_volfiles(
        self,
        volume_name: str,
        compiled: CompiledVolfiles,
        hostnames: Mapping[int, str],
    ) -> List[Path]:
        """Write every volfile of a volume and drop server files of nodes no longer hosting bricks."""
        changed: List[Path] = []
        expected = set()
        for node_id, text in sorted(compiled.server.items()):
            path = self.server_volfile_path(volume_name, hostnames[node_id])
            expected.add(path)
            if self._write_if_changed(path, text):
                changed.append(path)

        client_path = self.client_volfile_path(volume_name)
        expected.add(client_path)
        if self._write_if_changed(client_path, compiled.client):
            changed.append(client_path)

        for stale in sorted((self.volfile_dir / volume_name).glob("*.vol")):
            if stale not in expected:
                stale.unlink()
                logger.info(f"Removed stale volfile {stale}")

        if changed:
            logger.info(f"Volume '{volume_name}': {len(changed)} volfile(s) changed")
        return changed

    def write_launch_configs(self, volume_name: str, configs: Iterable[dict]) -> List[Path]:
        changed: List[Path] = []
        for config in configs:
            path = self.launch_config_path(volume_name, config["node"]["hostname"], config["path"])
            if self._write_if_changed(path, json.dumps(config, indent=2, sort_keys=True) + "\n"):
                changed.append(path)
        return changed

    def read_volfiles(self, volume_name: str) -> Dict[str, str]:
        folder = self.volfile_dir / volume_name
        if not folder.exists():
            return {}
        return {p.name: p.read_text(encoding="utf-8") for p in sorted(folder.glob("*.vol"))}

    def remove_volume(self, volume_name: str) -> None:
        for folder in (self.volfile_dir / volume_name, self.launch_config_dir / volume_name):
            if folder.exists():
                shutil.rmtree(folder)
        logger.info(f"Removed artifacts of volume '{volume_name}'")
