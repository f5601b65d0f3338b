from snaptriage.db.base import Base  # noqa: F401
from snaptriage.models.project import Project  # noqa: F401
from snaptriage.models.image import ImageRecord, ImageStatus, RelocationState  # noqa: F401
