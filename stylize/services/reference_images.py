"""
Reference Image Lookup
Read-only access to the selfies a job was created from.
"""

from typing import List

from sqlalchemy.orm import Session

from stylize.models.reference import ReferenceImage


def find_active(db: Session, ids: List[str], owner_id: str) -> List[ReferenceImage]:
    """Active images among `ids` owned by `owner_id`, in request order."""
    if not ids:
        return []
    rows = (
        db.query(ReferenceImage)
        .filter(
            ReferenceImage.id.in_(ids),
            ReferenceImage.owner_id == owner_id,
            ReferenceImage.status == "active",
        )
        .all()
    )
    by_id = {row.id: row for row in rows}
    return [by_id[i] for i in ids if i in by_id]
