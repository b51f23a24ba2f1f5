from flask import current_app


def get_chain():
    """The escrow chain client bound to the running app."""
    return current_app.extensions['escrow_chain']
