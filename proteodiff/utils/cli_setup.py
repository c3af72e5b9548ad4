
def configure_cli_display() -> None:
    """
    Configure dataframe display defaults for interactive debugging/logging.

    Called once when the CLI module is imported.
    """
    # Keep tracebacks readable: do not dump gigantic locals tables.
    # Also cap dataframe display sizes for any explicit prints/logs.
    import polars as pl
    import pandas as pd

    pl.Config.set_tbl_rows(10)
    pl.Config.set_tbl_cols(20)
    pl.Config.set_tbl_width_chars(160)

    pd.set_option("display.max_rows", 10)
    pd.set_option("display.max_columns", 20)
    pd.set_option("display.width", 160)
