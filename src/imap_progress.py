"""
Progress Sinks

Counters the backup pipeline reports into: one per run (folders) and one
per folder (messages). NullProgress discards everything for headless runs
and tests; TqdmProgress draws stacked tqdm bars. Pair TqdmProgress with
``tqdm.contrib.logging.logging_redirect_tqdm`` so log lines are printed
above the bars instead of through them.
"""

from __future__ import annotations

from tqdm import tqdm


class NullCounter:
    def increment(self) -> None:
        pass

    def set_label(self, text: str) -> None:
        pass

    def finish(self) -> None:
        pass


class NullProgress:
    def new_counter(self, total: int, label: str | None = None, unit: str = "msg") -> NullCounter:
        return NullCounter()


class TqdmCounter:
    def __init__(self, owner: TqdmProgress, bar: tqdm):
        self._owner = owner
        self._bar = bar
        self._finished = False

    def increment(self) -> None:
        self._bar.update(1)

    def set_label(self, text: str) -> None:
        self._bar.set_description_str(text)

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._bar.close()
        self._owner._active -= 1


class TqdmProgress:
    """
    Stacked tqdm bars. The outermost counter stays on screen when finished;
    nested ones are cleared, so only the folder total remains after a run.
    """

    def __init__(self, file=None):
        self._file = file
        self._active = 0

    def new_counter(self, total: int, label: str | None = None, unit: str = "msg") -> TqdmCounter:
        bar = tqdm(
            total=total,
            desc=label,
            unit=unit,
            leave=self._active == 0,
            position=self._active,
            file=self._file,
            dynamic_ncols=True,
        )
        self._active += 1
        return TqdmCounter(self, bar)
