from .models import (
    DiffConfig,
    DriftwatchConfig,
    PeerConfig,
    ReportConfig,
    TreeConfig,
)

__all__ = [
    "DiffConfig",
    "DriftwatchConfig",
    "PeerConfig",
    "ReportConfig",
    "TreeConfig",
]
