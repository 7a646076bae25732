"""Utility functions for dingtalk_connector."""

from dingtalk_connector.utils.text import chunk_text, looks_like_markdown, markdown_title

__all__ = ["chunk_text", "looks_like_markdown", "markdown_title"]
