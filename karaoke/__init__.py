"""Karaoke Queue: live song-request queue for a karaoke DJ."""
