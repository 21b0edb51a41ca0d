"""HTTP layer: routing, authentication, gzip compression, the Fever API and the web server."""