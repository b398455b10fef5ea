"""Container runtimes and the manifest auto-apply watcher.

The cluster controller lives in :mod:`keelson.runtime.controller`; it is not
re-exported here because the reconciler imports this package.
"""

from keelson.runtime.container import ContainerRuntime, InstanceHandle, SimulatedRuntime
from keelson.runtime.manifest_watcher import FileChange, ManifestChange, ManifestChangeSet, ManifestWatcher

__all__ = [
	"FileChange",
	"ContainerRuntime",
	"InstanceHandle",
	"ManifestChange",
	"ManifestChangeSet",
	"ManifestWatcher",
	"SimulatedRuntime",
]
