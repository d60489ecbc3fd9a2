"""cloudnav GUI package."""

__all__ = ['main']


def main():
    """Main entry point for GUI."""
    import gi
    gi.require_version('Gtk', '3.0')
    from gi.repository import Gtk, Gio

    from ..app import AppState
    from ..config import Config
    from ..logging_config import setup_logging
    from .dialogs import DialogHelper
    from .main_window import StorageBrowserWindow

    class CloudNavApplication(Gtk.Application):
        """GTK Application for cloudnav."""

        def __init__(self):
            super().__init__(application_id="com.github.cloudnav",
                             flags=Gio.ApplicationFlags.DEFAULT_FLAGS)
            self.window = None

        def do_activate(self):
            if self.window:
                self.window.present()
                return

            config = Config()
            setup_logging(level=config.log_level, log_file=config.log_path)
            app_state = AppState(config)
            storage = app_state.storage()
            if storage is None:
                app_state.teardown()
                DialogHelper.show_error(
                    None, "No storage configured",
                    "Add one with: cloudnav config --add-storage ID --set client_id=... client_secret=..."
                )
                return

            app_state.start()
            self.window = StorageBrowserWindow(self, app_state, storage)
            self.window.show_all()

    app = CloudNavApplication()
    app.run(None)
