"""
Path generation for artifact storage.
All paths are relative to ARTIFACT_ROOT.
"""

import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def safe_file_name(name: str, max_length: Optional[int] = None) -> str:
    """ASCII-only, filesystem-safe rendition of an arbitrary name."""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", ascii_name).strip("._")
    if max_length:
        cleaned = cleaned[:max_length].rstrip("._")
    return cleaned or "file"


def upload_path(owner_id: str, group_id: str, file_name: str) -> str:
    """Where the API drops an uploaded document until its batch is analyzed."""
    return f"uploads/{safe_file_name(owner_id)}/{safe_file_name(group_id)}/{safe_file_name(file_name)}"


def upload_dir(owner_id: str, group_id: str) -> str:
    return f"uploads/{safe_file_name(owner_id)}/{safe_file_name(group_id)}"


def source_path(owner_id: str, batch_id: str, item_id: str) -> str:
    """Transient copy of a downloaded source, removed once analysis finishes."""
    return f"{source_dir(owner_id, batch_id)}/{item_id}.pdf"


def source_dir(owner_id: str, batch_id: str) -> str:
    return f"sources/{safe_file_name(owner_id)}/{safe_file_name(batch_id)}"


def archive_path(owner_id: str, batch_id: str, fmt: str) -> str:
    """Path for a packaged zip of renditions."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"archives/{safe_file_name(owner_id)}/{safe_file_name(batch_id)}_{fmt}_{stamp}.zip"


def archive_member_name(
    series: str, folio: int, order_ref: Optional[str], customer_name: Optional[str], ext: str
) -> str:
    """Zip member name: <series><folio>_<order>_<customer>.<ext>."""
    order = safe_file_name(order_ref or "SIN_PEDIDO")
    customer = safe_file_name(customer_name or "CLIENTE", max_length=20)
    return f"{series}{folio}_{order}_{customer}.{ext}"


def ensure_parent_dirs(artifact_root: str, relative_path: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(artifact_root) / relative_path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
