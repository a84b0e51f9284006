"""deploy-agent: poll a git branch and run a build/test/deploy pipeline on new commits."""

from __future__ import annotations

__version__ = "0.1.0"
