"""Dialog helpers for the cloudnav GUI."""

import gi
gi.require_version('Gtk', '3.0')
from gi.repository import Gtk


class DialogHelper:
    """Reusable message dialogs."""

    @staticmethod
    def show_info(parent, title: str, message: str, secondary: str = "") -> None:
        """Show information dialog."""
        dialog = Gtk.MessageDialog(
            transient_for=parent,
            message_type=Gtk.MessageType.INFO,
            buttons=Gtk.ButtonsType.OK,
            text=title
        )
        if secondary or message:
            dialog.format_secondary_text(secondary or message)
        dialog.run()
        dialog.destroy()

    @staticmethod
    def show_error(parent, title: str, message: str) -> None:
        """Show error dialog."""
        dialog = Gtk.MessageDialog(
            transient_for=parent,
            message_type=Gtk.MessageType.ERROR,
            buttons=Gtk.ButtonsType.OK,
            text=title
        )
        dialog.format_secondary_text(message)
        dialog.run()
        dialog.destroy()
