"""Reference inference backend served by uvicorn under the shell's supervision."""
