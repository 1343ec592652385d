"""Progress reporting for long running maintenance scripts."""

import contextlib

import progressbar


# Value used for aligning printed action names
_ACTION_LENGTH = 25


def counter_widgets(action):
    """Widgets for a bar of unknown length counting processed items."""
    return [
        ' [', progressbar.Timer(format='Time: %(elapsed)s'), '] ',
        ' {} '.format(action).ljust(_ACTION_LENGTH),
        ' ', progressbar.Counter(), ' ',
        progressbar.BouncingBar(),
    ]


@contextlib.contextmanager
def conditional(show, **kwargs):
    """A wrapper for ProgressBar context manager that accepts condition.

    Returns:
        if bar should be shown, an actual bar instance.
        Otherwise, an object with a no-op update() method
    """
    if show:
        kwargs.setdefault('max_value', progressbar.UnknownLength)
        with progressbar.ProgressBar(**kwargs) as bar:
            yield bar
    else:
        yield _BarStub()


class _BarStub:
    def update(self, *args, **kwargs):
        pass
