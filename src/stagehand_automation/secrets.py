from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

logger = logging.getLogger(__name__)


class SecretResolver:
    """Resolves ``{aws_secret = ..., key = ...}`` references in variable mappings."""

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def resolve_reference(self, spec: dict[str, Any]) -> Any:
        if "aws_secret" not in spec:
            raise ValueError("credential reference must name an aws_secret")
        return self._resolve_aws_secret(spec)

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        if boto3 is None:
            raise RuntimeError("boto3 is required to resolve aws_secret references")
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        logger.debug("Fetching secret %s", name)
        client = boto3.client("secretsmanager")
        response = client.get_secret_value(SecretId=name)
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise RuntimeError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
            except json.JSONDecodeError:
                # Plain-text secrets ignore the key.
                payload = None
            if isinstance(payload, dict):
                value = payload[str(key)]

        self._cache[cache_key] = value
        return value


class KeyFileCache:
    """Writes resolved private keys to 0600 temp files for ``ssh -i``."""

    def __init__(self, resolver: Optional[SecretResolver] = None):
        self.resolver = resolver or SecretResolver()
        self._paths: dict[str, Path] = {}

    def path_for(self, name: str, credential: dict[str, Any]) -> Path:
        cached = self._paths.get(name)
        if cached is not None and cached.exists():
            return cached
        material = str(self.resolver.resolve_reference(credential))
        if not material.endswith("\n"):
            material += "\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f"stagehand-{name}-", suffix=".key")
        with os.fdopen(fd, "w") as handle:
            handle.write(material)
        path = Path(tmp_name)
        os.chmod(path, 0o600)
        self._paths[name] = path
        return path

    def cleanup(self) -> None:
        for path in self._paths.values():
            path.unlink(missing_ok=True)
        self._paths.clear()
