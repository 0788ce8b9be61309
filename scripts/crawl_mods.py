#!/usr/bin/env python3
"""
GitHub Mod Crawler Entry Point
Crawls GitHub for mod metadata and saves the catalog to catalog.json
"""

import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modcrawler.crawler import main


if __name__ == '__main__':
    sys.exit(main())
