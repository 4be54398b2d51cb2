"""Audio capture domain.

Segments recorded from the input device are written to WAV files and handed to the
monitoring loop through an asyncio queue, one segment at a time.
"""

__all__ = []
