"""Novel reader with text-to-speech narration.

The package holds two halves that talk over HTTP.

The server side is a FastAPI service:

* ``main.py`` – the API: novels, chapters, chapter upload and the
  speech synthesis endpoints.
* ``db.py`` – SQLite helpers for novels and chapters.
* ``extractor.py`` – splits uploaded text into chapters.
* ``tts.py`` – speech synthesis providers (silent audio or OpenAI).

The client side narrates text:

* ``player.py`` – the narration player. It chunks the text, fetches
  and prefetches audio, falls back to on-device speech and remembers
  where it stopped.
* ``streaming.py`` – a player that plays one streamed response as it
  downloads.
* ``playback.py`` – the playback surface protocols and the arbiter that
  makes sure only one player is audible.
* ``chunker.py``, ``fetcher.py``, ``state.py``, ``storage.py`` and
  ``errors.py`` – the player's building blocks.
* ``devices.py`` – a desktop playback surface (external audio player
  process plus ``pyttsx3``).
* ``cli.py``, ``config.py`` and ``logging_config.py`` – the command line
  client and its settings.
"""

__version__ = "0.1.0"
