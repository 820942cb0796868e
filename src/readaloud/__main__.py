"""
readaloud — listen to long text through a TTS server, a few paragraphs ahead.

Usage:
    python -m readaloud play chapter.txt
    python -m readaloud ready
"""

from .cli import main

if __name__ == "__main__":
    main()
