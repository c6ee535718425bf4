"""Python helper kit for operation handler executables."""
