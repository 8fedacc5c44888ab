# charts.py
from __future__ import annotations
from typing import Optional

import matplotlib
from matplotlib import ticker
from matplotlib.figure import Figure

from models import AppStats


def dashboard_figure(stats: Optional[AppStats], dpi: float = 96.0) -> Figure:
    """
    Weekly focus minutes (bars, left) and minutes per subject (bars, right).
    Built on a bare Figure so it renders without any GUI toolkit.
    """
    stats = stats or AppStats()
    fig = Figure(figsize=(9.6, 3.8), dpi=dpi)
    ax_week = fig.add_subplot(1, 2, 1)
    ax_subj = fig.add_subplot(1, 2, 2)
    fig.subplots_adjust(left=0.08, right=0.97, top=0.88, bottom=0.22, wspace=0.3)

    # ---- weekly ----
    days = [d["day"] for d in stats.weekly_data]
    mins = [float(d["minutes"]) for d in stats.weekly_data]
    xs = list(range(len(days)))
    ax_week.bar(xs, mins, color="#6366f1", linewidth=0)
    ax_week.set_xticks(xs)
    ax_week.set_xticklabels(days)
    ax_week.set_ylabel("Minutes")
    ax_week.set_title("Last 7 days", fontweight="bold")
    ax_week.yaxis.set_major_locator(ticker.MaxNLocator(nbins=6, integer=True))
    ax_week.grid(axis="y", linestyle=(0, (4, 4)), linewidth=0.8, alpha=0.6)
    ax_week.set_ylim(0, (max(mins) if any(mins) else 1.0) * 1.15)

    # ---- subjects ----
    names = [s["name"] for s in stats.subject_data]
    values = [float(s["value"]) for s in stats.subject_data]
    ax_subj.set_title("By subject", fontweight="bold")
    if not values:
        ax_subj.text(0.5, 0.5, "No focus sessions yet", ha="center", va="center",
                     transform=ax_subj.transAxes)
        ax_subj.set_xticks([])
        ax_subj.set_yticks([])
        return fig

    cmap = matplotlib.colormaps["tab20"]
    colors = [cmap(i % cmap.N) for i in range(len(names))]
    ys = list(range(len(names)))
    ax_subj.barh(ys, values, color=colors, linewidth=0)
    ax_subj.set_yticks(ys)
    ax_subj.set_yticklabels(names)
    ax_subj.invert_yaxis()
    ax_subj.set_xlabel("Minutes")
    return fig


def save_dashboard(stats: Optional[AppStats], path: str) -> None:
    dashboard_figure(stats).savefig(path)
