from reviewline.prompts.template import PromptTemplate

__all__ = ["PromptTemplate"]
