from readingroom.services.scheduling.sm2 import ReviewResult, Scheduler, SM2Scheduler, default_scheduler

__all__ = ["ReviewResult", "Scheduler", "SM2Scheduler", "default_scheduler"]
