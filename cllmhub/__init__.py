"""cLLMHub CLI - publish local LLMs to the LLMHub gateway."""

from .runtime import get_version

__version__ = get_version()
