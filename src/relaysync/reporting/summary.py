"""Rich rendering of a match view for the CLI."""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from relaysync.core.incidents import IncidentLog
from relaysync.state.models import MatchState, Phase, TeamState

TEAM_COLORS = ("cyan", "magenta")


def build_header(match: MatchState) -> Panel:
    finished = match.phase == Phase.POST_MATCH
    title = Text()
    title.append("FINAL  " if finished else "LIVE  ", style="bold red" if finished else "bold green")
    title.append(match.team1.team_name or match.team1.team_id, style=f"bold {TEAM_COLORS[0]}")
    title.append(f"  {match.team1.score:.0f} - {match.team2.score:.0f}  ", style="bold white")
    title.append(match.team2.team_name or match.team2.team_id, style=f"bold {TEAM_COLORS[1]}")

    sub = Text()
    sub.append(f"Match {match.match_id}", style="dim")
    sub.append("  |  ", style="dim")
    sub.append(match.phase.value, style="bold yellow")
    sub.append("  |  ", style="dim")
    sub.append(f"Round {match.round}  Half {match.half}", style="bold")
    if match.mode:
        sub.append("  |  ", style="dim")
        sub.append(match.mode, style="bold")
    if match.forfeited_by:
        sub.append("  |  ", style="dim")
        sub.append(f"Forfeit by {match.forfeited_by}", style="bold red")

    return Panel(Group(title, sub), border_style="red" if finished else "bright_white", padding=(0, 1))


def build_team_table(team: TeamState, color: str, is_mine: bool) -> Panel:
    table = Table(expand=True, show_edge=False)
    table.add_column("Player", style=f"bold {color}", no_wrap=True)
    table.add_column("Slot")
    table.add_column("Score", justify="right")
    table.add_column("Correct", justify="right")
    table.add_column("Acc", justify="right")
    table.add_column("Best streak", justify="right")
    table.add_column("Avg ms", justify="right")

    for player in team.players.values():
        name = Text(player.name)
        if player.is_active:
            name.append(" *", style="bold green")
        if player.is_igl:
            name.append(" (IGL)", style="dim")
        table.add_row(
            name,
            player.slot or "-",
            f"{player.score:.0f}",
            f"{player.correct}/{player.total}",
            f"{player.accuracy:.0%}",
            str(player.max_streak),
            f"{player.average_answer_time_ms:.0f}",
        )

    title = f"[bold]{team.team_name or team.team_id}[/bold]"
    if is_mine:
        title += " (you)"
    footer = f"slot {team.current_slot}, {team.questions_in_slot} answered, streak {team.current_streak}"
    return Panel(table, title=title, subtitle=footer, border_style=color)


def build_incident_panel(incidents: IncidentLog) -> Panel:
    report = incidents.get_report()
    text = Text()
    for kind, count in report.items():
        if kind == "total_incidents" or not count:
            continue
        text.append(f"  {kind}: ", style="dim")
        text.append(f"{count}\n", style="bold yellow")
    if not report["total_incidents"]:
        text.append("  none", style="dim italic")
    return Panel(text, title="[bold]Incidents[/bold]", border_style="yellow")


def render(match: MatchState, incidents: IncidentLog) -> Group:
    parts = [build_header(match)]
    for index, team_id in enumerate(match.team_order):
        team = match.teams[team_id]
        parts.append(build_team_table(team, TEAM_COLORS[index], team_id == match.is_my_team))
    parts.append(build_incident_panel(incidents))
    return Group(*parts)


def print_summary(match: MatchState | None, incidents: IncidentLog, console: Console | None = None) -> None:
    console = console or Console()
    if match is None:
        console.print("[dim]No match state[/dim]")
        console.print(build_incident_panel(incidents))
        return
    console.print(render(match, incidents))
