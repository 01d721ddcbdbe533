"""LLM provider clients and the layers wrapped around them."""
