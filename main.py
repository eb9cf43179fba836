#!/usr/bin/env python3
"""OpenStack VM lifecycle tools — CLI entrypoint."""

from stackvm.stackvm import main

if __name__ == "__main__":
    main()
