"""Channel plugins (console, Matrix) and the channel manager."""
