#    This file is part of NtfsReader.
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
import sys

from tqdm import tqdm


class Progress(object):
    """
    An interface to things that track the progress of a long running task.
    """
    def __init__(self, max_):
        super(Progress, self).__init__()
        self._max = max_
        self._current = 0

    def set_current(self, current):
        """
        Set the number of steps that this task has completed.
        """
        self._current = current

    def set_complete(self):
        """
        Convenience method to set the task as having completed all steps.
        """
        self.set_current(self._max)


class NullProgress(Progress):
    """
    A Progress class that ignores any updates.
    """
    pass


class ProgressBarProgress(Progress):
    """
    Draws a progress bar on STDERR.
    """
    def __init__(self, max_):
        super(ProgressBarProgress, self).__init__(max_)
        self._bar = tqdm(total=max_, desc="Records", unit="record", file=sys.stderr)

    def set_current(self, current):
        if current > self._current:
            self._bar.update(current - self._current)
        super(ProgressBarProgress, self).set_current(current)

    def set_complete(self):
        super(ProgressBarProgress, self).set_complete()
        self._bar.close()
