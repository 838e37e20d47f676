from files_control.models.files import (  # noqa: F401
    DownloadGrant,
    File,
    FileAccess,
    PendingUpload,
    StorageProvider,
)
from files_control.models.user import User  # noqa: F401
