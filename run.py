#!/usr/bin/env python3
"""Backup runner"""
from dirbackup.cli import main

if __name__ == '__main__':
    main()
