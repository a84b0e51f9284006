"""Safety checks for the rsync mirror target."""

from __future__ import annotations

import os
from pathlib import Path

_PROTECTED = (Path("/"), Path("/bin"), Path("/boot"), Path("/etc"), Path("/usr"), Path("/var"), Path("/home"))


def check_deploy_target(deploy_path: str, build_path: str) -> list[str]:
	"""Return problems with mirroring `build_path` into `deploy_path`.

	The deploy stage deletes files in the target that are absent from the
	build output, so the target must not be a system directory, the home
	directory, or overlap the build output.

	Args:
		deploy_path: Target directory of the mirror.
		build_path: Source directory of the mirror.
	"""
	problems: list[str] = []
	if "\x00" in deploy_path:
		return ["pipeline.deploy_path contains a null byte"]

	target = Path(os.path.expanduser(deploy_path)).resolve()
	if target in {p.resolve() for p in _PROTECTED} or target == Path.home().resolve():
		problems.append(f"pipeline.deploy_path points at a protected directory: {target}")

	if build_path:
		source = Path(os.path.expanduser(build_path)).resolve()
		if target == source:
			problems.append("pipeline.deploy_path must differ from pipeline.build_path")
		elif source.is_relative_to(target):
			problems.append(f"pipeline.deploy_path contains the build output: {target}")
		elif target.is_relative_to(source):
			problems.append(f"pipeline.deploy_path is inside the build output: {target}")

	return problems
