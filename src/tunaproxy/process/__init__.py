"""Process supervision — spawning tuna and streaming its diagnostics.

The tuna executable runs as a supervised child process with its stderr
split into lines for classification, exit observation and forced
termination.
"""

from tunaproxy.process.lines import LineSplitter
from tunaproxy.process.session import ProcessStatus, SupervisedProcess
from tunaproxy.process.supervisor import ProcessSupervisor

__all__ = [
    "LineSplitter",
    "ProcessStatus",
    "SupervisedProcess",
    "ProcessSupervisor",
]
