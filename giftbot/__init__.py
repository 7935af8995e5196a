"""Birthday gift pool bot for Discord."""
