from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import DataTable, Footer, Header, Input, Static

from issuepilot.issue_state import StatusGroup, filter_issues, next_status_group, sort_issues
from issuepilot.models import DashboardIssue
from issuepilot.service_runner import ServiceComponents, resume_active_session


_TITLE_MAX_CHARS = 60
_DETAIL_MESSAGE_COUNT = 5
_CONFIDENCE_MARKERS = {"green": "● green", "yellow": "● yellow", "red": "● red"}


class DashboardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("s", "scope", "Scope"),
        Binding("x", "fix", "Fix"),
        Binding("a", "approve", "Approve"),
        Binding("t", "retry", "Retry"),
        Binding("k", "abort", "Abort"),
        Binding("c", "cycle_status_filter", "Filter"),
        Binding("escape", "dismiss_error", "Dismiss"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #banner {
        height: auto;
        padding: 0 1;
        background: $error;
        color: $text;
    }
    #banner.hidden {
        display: none;
    }
    #summary {
        height: 1;
        padding: 0 1;
    }
    #issues-table {
        width: 3fr;
        height: 1fr;
    }
    #detail-scroll {
        width: 2fr;
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(self, *, components: ServiceComponents, refresh_seconds: int = 60) -> None:
        super().__init__()
        self._components = components
        self._refresh_seconds = refresh_seconds
        self._status_group: StatusGroup = "all"
        self._rows: tuple[DashboardIssue, ...] = ()
        self._views_ready = False

    @property
    def status_group(self) -> StatusGroup:
        return self._status_group

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="banner", classes="hidden")
            yield Static("", id="summary")
            with Horizontal():
                yield DataTable(id="issues-table", cursor_type="row")
                with VerticalScroll(id="detail-scroll"):
                    yield Static("", id="detail")
            yield Input(placeholder="Message or retry guidance for the selected issue", id="message-input")
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one("#issues-table", DataTable)
        table.add_columns("#", "Status", "Confidence", "Title", "Session")
        self._views_ready = True
        self._components.board.subscribe(self.refresh_view)
        await self._components.controller.refresh_issues()
        resume_active_session(self._components)
        if self._components.config.runtime.auto_scope:
            await self._components.controller.auto_scope_next()
        self._components.scheduler.start_inbound_sweep()
        self.refresh_view()
        self.set_interval(self._refresh_seconds, self._periodic_refresh)
        table.focus()

    async def on_unmount(self) -> None:
        self._views_ready = False
        await self._components.aclose()

    async def action_refresh(self) -> None:
        await self._components.controller.refresh_issues()

    async def action_scope(self) -> None:
        issue_number = self.selected_issue_number()
        if issue_number is not None:
            await self._components.controller.start_scope(issue_number)

    async def action_fix(self) -> None:
        issue_number = self.selected_issue_number()
        if issue_number is not None:
            await self._components.controller.start_fix(issue_number)

    async def action_approve(self) -> None:
        issue_number = self.selected_issue_number()
        if issue_number is not None:
            await self._components.controller.approve(issue_number)

    async def action_retry(self) -> None:
        issue_number = self.selected_issue_number()
        if issue_number is None:
            return
        guidance = self._take_input_text()
        await self._components.controller.retry(issue_number, guidance or None)

    async def action_abort(self) -> None:
        issue_number = self.selected_issue_number()
        if issue_number is not None:
            await self._components.controller.abort(issue_number)

    def action_cycle_status_filter(self) -> None:
        self._status_group = next_status_group(self._status_group)
        self.refresh_view()

    def action_dismiss_error(self) -> None:
        self._components.board.dismiss_error()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "message-input":
            return
        issue_number = self.selected_issue_number()
        text = self._take_input_text()
        if issue_number is None or not text:
            return
        await self._components.controller.send_message(issue_number, text)
        self.query_one("#issues-table", DataTable).focus()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "issues-table":
            return
        self._refresh_detail()

    def selected_issue_number(self) -> int | None:
        if not self._views_ready or not self._rows:
            return None
        row_index = self.query_one("#issues-table", DataTable).cursor_row
        if row_index < 0 or row_index >= len(self._rows):
            return None
        return self._rows[row_index].number

    def refresh_view(self) -> None:
        if not self._views_ready:
            return
        board = self._components.board
        selected = self.selected_issue_number()
        self._rows = sort_issues(filter_issues(board.issues(), status_group=self._status_group))

        table = self.query_one("#issues-table", DataTable)
        table.clear(columns=False)
        active = board.active_session
        for issue in self._rows:
            watched = active is not None and active.issue_number == issue.number
            table.add_row(
                str(issue.number),
                issue.status,
                _CONFIDENCE_MARKERS.get(issue.confidence or "", "-"),
                _truncate(issue.title, _TITLE_MAX_CHARS),
                f"{active.kind} (watching)" if watched and active is not None else _session_label(issue),
                key=str(issue.number),
            )
        if selected is not None:
            for index, issue in enumerate(self._rows):
                if issue.number == selected:
                    table.move_cursor(row=index, animate=False)
                    break

        banner = self.query_one("#banner", Static)
        if board.error:
            banner.update(board.error)
            banner.remove_class("hidden")
        else:
            banner.update("")
            banner.add_class("hidden")
        self.query_one("#summary", Static).update(
            _summary_text(board.issues(), status_group=self._status_group, shown=len(self._rows))
        )
        for notice in board.drain_notices():
            self.notify(notice, severity="warning")
        self._refresh_detail()

    async def _periodic_refresh(self) -> None:
        await self._components.controller.refresh_issues()
        if self._components.config.runtime.auto_scope:
            await self._components.controller.auto_scope_next()

    def _refresh_detail(self) -> None:
        issue_number = self.selected_issue_number()
        issue = self._components.board.get(issue_number) if issue_number is not None else None
        self.query_one("#detail", Static).update(
            issue_detail_text(issue) if issue is not None else "No issue selected."
        )

    def _take_input_text(self) -> str:
        field = self.query_one("#message-input", Input)
        text = field.value.strip()
        field.value = ""
        return text


def run_dashboard_tui(*, components: ServiceComponents, refresh_seconds: int) -> None:
    app = DashboardApp(components=components, refresh_seconds=refresh_seconds)
    app.run()


def issue_detail_text(issue: DashboardIssue) -> str:
    lines = [f"#{issue.number} {issue.title}", f"Status: {issue.status}", issue.github_url, ""]
    scoping = issue.scoping
    if scoping is not None:
        lines.append(f"Confidence: {scoping.confidence} ({scoping.confidence_reason})")
        lines.append(f"Current behavior: {scoping.current_behavior}")
        lines.append(f"Requested fix: {scoping.requested_fix}")
        if scoping.files_to_modify:
            lines.append(f"Files: {', '.join(scoping.files_to_modify)}")
        for index, step in enumerate(scoping.action_plan, start=1):
            lines.append(f"  {index}. {step}")
        for question in scoping.open_questions:
            lines.append(f"  ? {question}")
        lines.append("")
    if issue.blocker is not None:
        lines.append(f"Blocked: {issue.blocker.what_happened}")
        lines.append(f"Suggestion: {issue.blocker.suggestion}")
        lines.append("")
    if issue.fix_progress is not None and issue.fix_progress.blockers:
        lines.append(f"Failed: {'; '.join(issue.fix_progress.blockers)}")
        lines.append("")
    if issue.pr is not None:
        lines.append(f"PR #{issue.pr.number}: {issue.pr.title}")
        lines.append(issue.pr.url)
        for change in issue.pr.files_changed:
            lines.append(f"  {change.path} +{change.additions} -{change.deletions}")
        lines.append("")
    if issue.github_comment_url:
        lines.append(f"Last comment: {issue.github_comment_url}")
    for message in issue.messages[-_DETAIL_MESSAGE_COUNT:]:
        lines.append(f"[{message.role}] {_truncate(message.text, 200)}")
    return "\n".join(lines).rstrip()


def _summary_text(
    issues: tuple[DashboardIssue, ...],
    *,
    status_group: StatusGroup,
    shown: int,
) -> str:
    waiting = sum(1 for issue in issues if issue.status in ("blocked", "awaiting_reply"))
    return f"filter={status_group} shown={shown} total={len(issues)} needs_input={waiting}"


def _session_label(issue: DashboardIssue) -> str:
    if issue.fix_session is not None:
        return "fixing"
    if issue.scoping_session is not None:
        return "scoping"
    return "-"


def _truncate(text: str, limit: int) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return f"{flattened[: limit - 3]}..."
