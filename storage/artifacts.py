"""Artifact storage for JSON snapshots.

The upstream feed only keeps per-charge detail for about a week, so raw
pages are snapshotted here before normalization. Discrepancy reports are
exported through the same helpers.
"""

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from models.refs import DataReference


def _compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def put_json(obj: Any, path: Path, ensure_parent: bool = True) -> DataReference:
    """Store a JSON-serializable object (dict, list or pydantic model).

    Returns:
        DataReference with the content hash for later verification
    """
    if ensure_parent:
        path.parent.mkdir(parents=True, exist_ok=True)

    if hasattr(obj, "model_dump"):
        payload = obj.model_dump(mode="json", by_alias=True)
    else:
        payload = obj

    json_bytes = json.dumps(payload, indent=2, default=str).encode("utf-8")
    path.write_bytes(json_bytes)

    return DataReference(
        storage_uri=str(path.absolute()),
        content_hash=_compute_sha256(json_bytes),
        content_type="application/json",
        size_bytes=len(json_bytes),
        stored_at=datetime.utcnow(),
    )


def get_json(ref: DataReference, validate_hash: bool = True) -> Any:
    """Load a JSON artifact.

    Raises:
        FileNotFoundError: If artifact path doesn't exist
        ValueError: If hash validation fails
    """
    path = Path(ref.storage_uri)

    if not path.exists():
        raise FileNotFoundError(f"Artifact not found: {ref.storage_uri}")

    json_bytes = path.read_bytes()

    if validate_hash:
        actual_hash = _compute_sha256(json_bytes)
        if actual_hash != ref.content_hash:
            raise ValueError(
                f"Hash mismatch for {ref.storage_uri}: "
                f"expected {ref.content_hash}, got {actual_hash}"
            )

    return json.loads(json_bytes.decode("utf-8"))


def snapshot_raw_records(
    records: List[Dict[str, Any]],
    artifacts_dir: Path,
    run_id: str,
    query_id: str,
    channel_tenant_id: Optional[str] = None,
) -> DataReference:
    """Keep the raw feed records of one query for a run."""
    safe_query = "".join(c if c.isalnum() or c in "-_." else "_" for c in query_id)
    path = Path(artifacts_dir) / "raw_feed" / run_id / f"{safe_query}.json"
    return put_json(
        {
            "run_id": run_id,
            "query_id": query_id,
            "channel_tenant_id": channel_tenant_id,
            "records": records,
        },
        path,
    )
