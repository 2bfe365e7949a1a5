"""clustertop - Main Textual application."""

import logging
import sys
from datetime import timedelta

from pydantic import ValidationError
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.logging import TextualHandler
from textual.widgets import Footer, Sparkline, Static

from clustertop.config import Settings
from clustertop.errors import AlreadyStartedError, BadParameter
from clustertop.metrics import Metrics, PrometheusMetrics
from clustertop.models import Series, Snapshot
from clustertop.poller import MetricsPoller
from clustertop.profiling import start_profiling, stop_profiling

logger = logging.getLogger(__name__)

BAR_WIDTH = 20
TIME_FORMAT = "%H:%M"
DATE_FORMAT = "%a %b %d %H:%M:%S UTC"


def format_bytes(size: int | None) -> str:
    """Format bytes as human-readable string."""
    if size is None:
        return "n/a"
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{size:d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def level_color(percent: int) -> str:
    """Pick the bar color for a utilization level."""
    if percent <= 25:
        return "green"
    if percent > 75:
        return "red"
    return "yellow"


def format_bar(percent: int | None) -> str:
    """Render a percentage as a colored bar with its value."""
    if percent is None:
        return "\\[" + "[dim]░[/dim]" * BAR_WIDTH + "]  n/a"
    bar_len = min(max(percent * BAR_WIDTH // 100, 0), BAR_WIDTH)
    color = level_color(percent)
    bar = f"[{color}]█[/{color}]" * bar_len + "[dim]░[/dim]" * (BAR_WIDTH - bar_len)
    # Escaped opening bracket keeps markup from eating the bar container
    return f"\\[{bar}] {percent:3d}%"


class SummaryStats(Static):
    """Header widget with cluster totals and the time of the last update."""

    DEFAULT_CSS = """
    SummaryStats {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize SummaryStats."""
        super().__init__("Waiting for metrics...", *args, **kwargs)
        self._total_cpu: int | None = None
        self._total_memory: int | None = None
        self._observed_at = None

    def update_stats(self, snapshot: Snapshot) -> None:
        """Update the totals from a snapshot."""
        self._total_cpu = snapshot.total_cpu
        self._total_memory = snapshot.total_memory_bytes
        self._observed_at = snapshot.observed_at
        self.update(self._get_summary())

    def _get_summary(self) -> str:
        return (
            f"Total CPU Cores: {self._total_cpu}\n"
            f"Total Memory: {format_bytes(self._total_memory)}\n"
            f"Last Updated: {self._observed_at.strftime(DATE_FORMAT)}"
        )


class ResourcePanel(Container):
    """Current and peak gauges plus the usage history of one resource."""

    DEFAULT_CSS = """
    ResourcePanel {
        height: 1fr;
        border: solid $primary;
    }

    ResourcePanel .gauges {
        width: 34;
        padding: 0 1;
    }

    ResourcePanel .chart-label {
        height: 1;
    }

    ResourcePanel Sparkline {
        height: 1fr;
    }
    """

    def __init__(self, title: str, history_points: int = 140, *args, **kwargs) -> None:
        """
        Initialize ResourcePanel.

        Args:
            title: Resource name shown in labels, e.g. "CPU".
            history_points: How many of the most recent samples to chart.
        """
        super().__init__(*args, **kwargs)
        self.border_title = title
        self._title = title
        self._history_points = history_points
        self._current: int | None = None
        self._peak: int | None = None
        self._series = Series()

    @property
    def series(self) -> Series:
        """Get the charted window of the usage history."""
        return self._series

    def compose(self) -> ComposeResult:
        """Compose the panel layout."""
        yield Horizontal(
            Static(self._get_gauges(), classes="gauges"),
            Vertical(
                Static(self._get_chart_label(), classes="chart-label"),
                Sparkline([], summary_function=max),
            ),
        )

    def update_stats(self, current: int, peak: int | None, series: Series) -> None:
        """Update the gauges and the chart."""
        self._current = current
        self._peak = peak
        self._series = series.tail(self._history_points)
        self.query_one(".gauges", Static).update(self._get_gauges())
        self.query_one(".chart-label", Static).update(self._get_chart_label())
        self.query_one(Sparkline).data = [float(v) for v in self._series.values()]

    def _get_gauges(self) -> str:
        if self._current is None:
            return f"Loading {self._title} info..."
        return (
            f"Current {self._title}\n{format_bar(self._current)}\n\n"
            f"Peak {self._title}\n{format_bar(self._peak)}"
        )

    def _get_chart_label(self) -> str:
        if not self._series:
            return f"{self._title} usage: no data"
        first, last = self._series[0].time, self._series[-1].time
        return (
            f"{self._title} usage, {len(self._series)} points "
            f"({first.strftime(TIME_FORMAT)} - {last.strftime(TIME_FORMAT)})"
        )


class ClusterTopApp(App):
    """Main clustertop application."""

    TITLE = "clustertop"
    SUB_TITLE = "Cluster Resource Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #summary {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        metrics: Metrics,
        poll_rate: float = 2.0,
        range_width: timedelta = timedelta(hours=1),
        step: timedelta = timedelta(seconds=15),
        history_points: int = 140,
    ) -> None:
        """Initialize the ClusterTopApp."""
        super().__init__()
        self._metrics = metrics
        self._history_points = history_points
        self._poller = MetricsPoller(
            metrics,
            self._update_ui,
            poll_rate=poll_rate,
            range_width=range_width,
            step=step,
        )
        self._last_snapshot: Snapshot | None = None

    @property
    def poller(self) -> MetricsPoller:
        return self._poller

    @property
    def last_snapshot(self) -> Snapshot | None:
        return self._last_snapshot

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield SummaryStats(id="summary")
        yield ResourcePanel("CPU", self._history_points, id="cpu-panel")
        yield ResourcePanel("RAM", self._history_points, id="memory-panel")
        yield Footer()

    def on_mount(self) -> None:
        """Start polling once the widgets exist."""
        self._poller.start()

    async def on_unmount(self) -> None:
        """Stop polling and release the backend client."""
        await self._poller.stop()
        await self._metrics.aclose()

    def _update_ui(self, snapshot: Snapshot) -> None:
        """Render a freshly published snapshot."""
        self._last_snapshot = snapshot
        self.query_one("#summary", SummaryStats).update_stats(snapshot)
        self.query_one("#cpu-panel", ResourcePanel).update_stats(
            snapshot.current_cpu_percent, snapshot.max_cpu_percent, snapshot.cpu_rate
        )
        self.query_one("#memory-panel", ResourcePanel).update_stats(
            snapshot.current_memory_percent, snapshot.max_memory_percent, snapshot.memory_rate
        )

    async def action_quit(self) -> None:
        """Handle quit action: stop polling, then exit."""
        await self._poller.stop()
        self.exit()


def main() -> None:
    """Entry point for clustertop application."""
    try:
        settings = Settings()
    except ValidationError as exc:
        sys.exit(f"clustertop: invalid configuration\n{exc}")

    logging.basicConfig(level=settings.log_level, handlers=[TextualHandler()])

    try:
        metrics = PrometheusMetrics.from_address(
            settings.prometheus_address, timeout=settings.query_timeout
        )
    except BadParameter as exc:
        logger.error("Cannot create metrics client: %s", exc)
        sys.exit(f"clustertop: {exc}")

    if settings.profile_dir:
        try:
            start_profiling(settings.profile_dir, settings.profiling_interval)
        except (AlreadyStartedError, OSError) as exc:
            logger.error("Profiling disabled: %s", exc)

    app = ClusterTopApp(
        metrics,
        poll_rate=settings.poll_interval,
        range_width=settings.range_width_delta,
        step=settings.step_delta,
        history_points=settings.history_points,
    )
    try:
        app.run()
    finally:
        stop_profiling()


if __name__ == "__main__":
    main()
