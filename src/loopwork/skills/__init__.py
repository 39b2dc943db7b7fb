from .executor import SkillContext, SkillExecutor, SkillResult, resolve_handler

__all__ = ["SkillContext", "SkillExecutor", "SkillResult", "resolve_handler"]
