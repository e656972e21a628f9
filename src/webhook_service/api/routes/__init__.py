"""Route modules for aiohttp."""
