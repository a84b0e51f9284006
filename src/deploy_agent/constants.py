"""Centralized limits, glyphs and defaults."""

from __future__ import annotations

# Characters kept from the tail of command output in notifications
STDOUT_TAIL_CHARS = 500
ERROR_TAIL_CHARS = 1000

# Consecutive sync failures tolerated before the poll loop gives up
DEFAULT_MAX_RETRIES = 10
DEFAULT_POLL_INTERVAL = 60

# Stage progress markers (Slack emoji codes)
STAGE_DONE = ":white_check_mark:"
STAGE_FAILED = ":x:"
STAGE_WITHHELD = ":double_vertical_bar:"

# Task group markers inside aggregate error details
TASK_FAILED = ":small_red_triangle_down:"
TASK_DONE = ":black_small_square:"
TASK_PENDING = ":white_small_square:"

ICON_SUCCESS = ":simple_smile:"
ICON_FAILURE = ":monkey_face:"

POST_TASKS_PREFIX = "[Post tasks] "

# Directories never rewritten when stamping the commit hash
DEFAULT_EXCLUDE_DIRS: tuple[str, ...] = ("node_modules", ".git", "__pycache__", ".venv")
