"""Execution engine for user-authored browser test scripts.

Single scripts and multi-script jobs are admitted into bounded worker pools,
run as supervised child processes of the test tool (`e2e_sandbox`) and always
end in a Completed status with a report at a predictable path.
"""
