"""vidtsx-mcp: composition rendering and local transcription jobs.

Renders TSX compositions to video through the Remotion CLI and transcribes
audio/video with a local whisper.cpp executable, exposed as MCP tools.
"""
