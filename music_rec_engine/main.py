#!/usr/bin/env python
"""
Main entry point for the Music Recommendation Engine.
"""

from music_rec_engine.cli import main

if __name__ == "__main__":
    main()
