"""Pure helpers shared by activities and workflow code."""
