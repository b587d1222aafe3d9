# Database models package
from stylize.models.job import Job, JobVersion, JobStatus, JobMode, Visibility
from stylize.models.reference import ReferenceImage, Post, Profile

__all__ = [
    "Job",
    "JobVersion",
    "JobStatus",
    "JobMode",
    "Visibility",
    "ReferenceImage",
    "Post",
    "Profile",
]
