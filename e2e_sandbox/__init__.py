"""Test tool spawned by the execution engine.

`python -m e2e_sandbox.playwright_python FILE...` runs user-authored Playwright
scripts in fresh browser contexts, prints one line per file plus a
machine-readable result line, and writes an HTML report. The engine only relies
on that output contract, so any tool that honours it can replace this one.
"""
