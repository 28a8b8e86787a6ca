"""Attachment downloads from the blob store."""

from __future__ import annotations

from flask import Blueprint, send_file
from flask_login import current_user, login_required

import blob_store
from errors import NotFound

bp = Blueprint("files", __name__)


@bp.route("/files/<path:storage_path>")
@login_required
def download(storage_path):
    # Blobs are stored as {area}/{principalId}/...
    parts = storage_path.split("/")
    if not current_user.is_admin and (len(parts) < 3 or parts[1] != current_user.principal_id):
        raise NotFound("File not found.")
    return send_file(blob_store.open_path(storage_path))
