"""cardify: offline-first SM-2 flashcard scheduling and sync core."""

from cardify.consts import VERSION

__version__ = VERSION
