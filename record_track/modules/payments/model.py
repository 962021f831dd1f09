from PySide6.QtCore import QAbstractTableModel, Qt, QModelIndex
from ...utils.helpers import fmt_due, fmt_money


class CombinedEntriesTableModel(QAbstractTableModel):
    HEADERS = ["Date", "Entry", "Total", "Received", "Expense", "Due", "Status"]

    def __init__(self, rows: list = None):
        super().__init__()
        self._rows = rows or []

    def rowCount(self, parent=QModelIndex()):
        return len(self._rows)

    def columnCount(self, parent=QModelIndex()):
        return len(self.HEADERS)

    def data(self, index, role=Qt.DisplayRole):
        if not index.isValid():
            return None
        e = self._rows[index.row()]
        c = index.column()
        if role in (Qt.DisplayRole, Qt.EditRole):
            # unpaid rows have nothing received yet
            mapping = [
                e.date,
                e.product_name,
                fmt_money(e.total),
                fmt_money(e.received) if e.has_payment else "-",
                fmt_money(e.expense) if e.has_payment else "-",
                fmt_due(e.due_amount),
                e.status,
            ]
            return mapping[c] if c < len(mapping) else None
        if role == Qt.TextAlignmentRole and 2 <= c <= 5:
            return Qt.AlignRight | Qt.AlignVCenter
        if role == Qt.ToolTipRole and e.is_stale:
            return (f"Sale total changed to {fmt_money(e.total)} after this payment was "
                    f"recorded against {fmt_money(e.payment.sale_total)}.")
        return None

    def headerData(self, section, orientation, role=Qt.DisplayRole):
        if orientation == Qt.Horizontal and role == Qt.DisplayRole:
            return self.HEADERS[section] if section < len(self.HEADERS) else None
        return super().headerData(section, orientation, role)

    def at(self, row: int):
        return self._rows[row]

    def replace(self, rows: list):
        self.beginResetModel()
        self._rows = list(rows)
        self.endResetModel()
