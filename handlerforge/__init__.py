"""handlerforge: keep a plugin-composed Lambda function up to date.

Handler plugins are published as npm tarballs into a versioned S3 prefix.
Each run scans the prefix, and when any tarball version has not been
deployed yet it rebuilds the resolver package with all current handlers
and rolls it out to the function:

  - S3TarballRepository: per-key version ledgers and deployment marks
  - ArtifactBuilder: base package + installed handlers, streamed as a zip
  - LambdaUpdateTarget: readiness-gated, revision-guarded code/config update
  - Updater: sequences one reconciliation run
"""

__version__ = "0.1.0"

from handlerforge.core.updater import Updater

__all__ = ["Updater", "__version__"]
