# __init__.py for dwiconvert.cli
