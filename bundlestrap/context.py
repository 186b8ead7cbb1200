import logging
import signal
import threading

from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class BuildContext(object):
    """Cancellation handle shared by everything a single build starts.

    Child processes register themselves as they are launched so that a
    cancel() from another thread (a signal handler, say) can kill them.
    Long running loops call check() between units of work.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        # Reentrant, cancel() may run from a signal handler which
        # interrupted register_process on the same thread.
        self._lock = threading.RLock()
        self._processes = []

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def cancel(self):
        LOG.info('Build cancelled, stopping %d child processes'
                 % len(self._processes))
        self._cancelled.set()
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            if proc.poll() is None:
                proc.send_signal(signal.SIGKILL)

    def detached(self):
        """A fresh context for cleanup work which must run after cancel."""
        return BuildContext()

    def check(self):
        if self._cancelled.is_set():
            raise exceptions.BuildCancelledError('build context cancelled')

    def register_process(self, proc):
        with self._lock:
            self._processes.append(proc)
        if self._cancelled.is_set():
            proc.send_signal(signal.SIGKILL)

    def unregister_process(self, proc):
        with self._lock:
            if proc in self._processes:
                self._processes.remove(proc)
