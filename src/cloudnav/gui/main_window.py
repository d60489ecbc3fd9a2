"""Main window for the cloudnav GUI."""

import logging
from typing import Dict, Optional

import gi
gi.require_version('Gtk', '3.0')
from gi.repository import Gtk, GLib, Pango

from ..app import AppState
from ..call_states import AuthPhase, DownloadFilePhase
from ..clouds.models import format_size
from ..errors import DownloadInProgressError
from ..path_utils import SecurityError, append_path
from ..storage_instance import StorageInstance
from .dialogs import DialogHelper

logger = logging.getLogger(__name__)

AUTH_PHASE_TEXT = {
    AuthPhase.STARTING_LOCAL_SERVER: "Starting local server...",
    AuthPhase.BOUND: "Local server bound",
    AuthPhase.WAITING_FOR_SERVER_UP: "Waiting for local server...",
    AuthPhase.BROWSER_LAUNCH_PENDING: "Opening browser...",
    AuthPhase.BROWSER_OPENED: "Waiting for sign in in the browser...",
}


class DownloadRow(Gtk.ListBoxRow):
    """Progress bar and cancel button of one download."""

    def __init__(self, storage: StorageInstance, call_id: int, remote_path: str):
        super().__init__()
        self.call_id = call_id

        box = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=6)
        box.set_border_width(4)
        self.add(box)

        self.progress = Gtk.ProgressBar(show_text=True)
        self.progress.set_text(remote_path)
        box.pack_start(self.progress, True, True, 0)

        cancel = Gtk.Button.new_from_icon_name("process-stop", Gtk.IconSize.BUTTON)
        cancel.set_tooltip_text("Cancel download")
        cancel.connect("clicked", lambda _b: storage.cancel_download(call_id))
        box.pack_start(cancel, False, False, 0)

    def update(self, state) -> None:
        name = state.remote_path.rsplit('/', 1)[-1]
        fraction = state.fraction
        if fraction is None:
            self.progress.pulse()
            self.progress.set_text(f"{name} ({format_size(state.bytes_downloaded)})")
        else:
            self.progress.set_fraction(fraction)
            self.progress.set_text(
                f"{name} ({format_size(state.bytes_downloaded)} of {format_size(state.total_size)})"
            )
        if state.phase == DownloadFilePhase.REFRESHING_TOKEN:
            self.progress.set_text(f"{name} (refreshing access token...)")


class StorageBrowserWindow(Gtk.ApplicationWindow):
    """Browses one storage and shows downloads in progress."""

    TICK_MS = 100

    def __init__(self, application, app_state: AppState, storage: StorageInstance):
        Gtk.ApplicationWindow.__init__(
            self, application=application, title=f"cloudnav - {storage.caption}"
        )
        self.set_default_size(800, 600)
        self.set_border_width(10)
        self.set_icon_name("folder-remote")

        self.app_state = app_state
        self.storage = storage
        self._revision = -1
        self._download_rows: Dict[int, DownloadRow] = {}
        self._reported_errors = 0
        self._shown_folder = None

        self._build_ui()
        self.connect("destroy", self._on_destroy)
        self._tick_id: Optional[int] = GLib.timeout_add(self.TICK_MS, self._on_tick)

    def _build_ui(self) -> None:
        vbox = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=6)
        self.add(vbox)

        toolbar = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=6)
        vbox.pack_start(toolbar, False, False, 0)

        self.up_button = Gtk.Button.new_from_icon_name("go-up", Gtk.IconSize.BUTTON)
        self.up_button.set_tooltip_text("Parent folder")
        self.up_button.connect("clicked", lambda _b: self.storage.nav_up())
        toolbar.pack_start(self.up_button, False, False, 0)

        self.path_label = Gtk.Label(xalign=0)
        self.path_label.set_ellipsize(Pango.EllipsizeMode.END)
        toolbar.pack_start(self.path_label, True, True, 0)

        self.download_button = Gtk.Button(label="Download")
        self.download_button.connect("clicked", self._on_download_clicked)
        toolbar.pack_end(self.download_button, False, False, 0)

        self.sign_in_button = Gtk.Button(label="Sign in")
        self.sign_in_button.connect("clicked", self._on_sign_in_clicked)
        toolbar.pack_end(self.sign_in_button, False, False, 0)

        scrolled = Gtk.ScrolledWindow()
        scrolled.set_policy(Gtk.PolicyType.AUTOMATIC, Gtk.PolicyType.AUTOMATIC)
        vbox.pack_start(scrolled, True, True, 0)

        # icon, name, size, modified, is_folder
        self.file_store = Gtk.ListStore(str, str, str, str, bool)
        self.file_view = Gtk.TreeView(model=self.file_store)
        self.file_view.connect("row-activated", self._on_row_activated)

        column_name = Gtk.TreeViewColumn("Name")
        renderer_icon = Gtk.CellRendererPixbuf()
        renderer_icon.set_padding(4, 2)
        column_name.pack_start(renderer_icon, False)
        column_name.add_attribute(renderer_icon, "icon-name", 0)
        renderer_name = Gtk.CellRendererText()
        column_name.pack_start(renderer_name, True)
        column_name.add_attribute(renderer_name, "text", 1)
        column_name.set_expand(True)
        self.file_view.append_column(column_name)

        for title, index in (("Size", 2), ("Modified", 3)):
            column = Gtk.TreeViewColumn(title, Gtk.CellRendererText(), text=index)
            self.file_view.append_column(column)
        scrolled.add(self.file_view)

        self.download_list = Gtk.ListBox()
        self.download_list.set_selection_mode(Gtk.SelectionMode.NONE)
        vbox.pack_start(self.download_list, False, False, 0)

        self.status_label = Gtk.Label(xalign=0)
        self.status_label.set_line_wrap(True)
        vbox.pack_start(self.status_label, False, False, 0)

    def _on_tick(self) -> bool:
        self.app_state.tick()
        visual = self.storage.visual_state
        if visual.revision != self._revision:
            self._revision = visual.revision
            self._refresh(visual)
        else:
            self._refresh_downloads()
        return True

    def _refresh(self, visual) -> None:
        self.path_label.set_text(visual.v_path)
        self.up_button.set_sensitive(bool(self.storage.current_path))

        if visual.folder is not self._shown_folder:
            self._show_folder(visual.folder)

        auth_state = self.storage.auth_state()
        if auth_state is not None:
            self.sign_in_button.set_label("Cancel sign in")
            self.status_label.set_text(AUTH_PHASE_TEXT.get(auth_state.phase, ''))
        else:
            self.sign_in_button.set_label("Sign in")
            if visual.auth_needed:
                self.status_label.set_text("Sign in to browse this storage.")
            elif visual.list_folder_error:
                self.status_label.set_text(f"Can't list folder: {visual.list_folder_error}")
            elif visual.last_error:
                self.status_label.set_text(visual.last_error)
            else:
                self.status_label.set_text('')

        errors = len(visual.download_errors)
        if errors > self._reported_errors:
            self._reported_errors = errors
            last = list(visual.download_errors.values())[-1]
            DialogHelper.show_error(self, "Download failed", last)

        self._refresh_downloads()

    def _show_folder(self, folder) -> None:
        self._shown_folder = folder
        self.file_store.clear()
        if folder is None:
            return
        items = sorted(folder.items, key=lambda i: (not i.is_folder, i.name.lower()))
        for item in items:
            self.file_store.append([
                "folder" if item.is_folder else "text-x-generic",
                item.name,
                format_size(item.size),
                item.modified.strftime('%Y-%m-%d %H:%M') if item.modified else '',
                item.is_folder,
            ])

    def _refresh_downloads(self) -> None:
        downloads = self.storage.downloads()
        for call_id in list(self._download_rows):
            if call_id not in downloads:
                self.download_list.remove(self._download_rows.pop(call_id))
        for call_id, state in downloads.items():
            row = self._download_rows.get(call_id)
            if row is None:
                row = DownloadRow(self.storage, call_id, state.remote_path)
                self._download_rows[call_id] = row
                self.download_list.add(row)
                row.show_all()
            row.update(state)

    def _selected_item(self):
        model, tree_iter = self.file_view.get_selection().get_selected()
        if tree_iter is None:
            return None
        return model.get_value(tree_iter, 1), model.get_value(tree_iter, 4)

    def _on_row_activated(self, _view, path, _column) -> None:
        tree_iter = self.file_store.get_iter(path)
        name = self.file_store.get_value(tree_iter, 1)
        if self.file_store.get_value(tree_iter, 4):
            self.storage.nav_into(name)
        else:
            self._download(name)

    def _on_download_clicked(self, _button) -> None:
        selected = self._selected_item()
        if selected is None or selected[1]:
            DialogHelper.show_info(self, "Select a file", "", "Folders can't be downloaded.")
            return
        self._download(selected[0])

    def _download(self, name: str) -> None:
        remote_path = append_path(self.storage.current_path, name)
        try:
            self.storage.download_file(remote_path)
        except (SecurityError, DownloadInProgressError) as e:
            DialogHelper.show_error(self, "Can't download file", str(e))

    def _on_sign_in_clicked(self, _button) -> None:
        call_id = self.storage.visual_state.auth_call_id
        if call_id is not None:
            self.storage.cancel_auth(call_id)
        else:
            self.storage.start_auth()

    def _on_destroy(self, _widget) -> None:
        if self._tick_id is not None:
            GLib.source_remove(self._tick_id)
            self._tick_id = None
        logger.info("Window closed, shutting down")
        self.app_state.teardown()
