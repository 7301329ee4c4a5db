"""External collaborators: blocks, bans, public profiles, contact eligibility."""

from .contracts import (  # noqa: F401
	BanState,
	BlockRegistry,
	ContactEligibility,
	ModerationGate,
	ProfileDirectory,
	ProfileSummary,
)
from .repository import DirectoryRepository, get_directory, memory_directory, set_directory  # noqa: F401
