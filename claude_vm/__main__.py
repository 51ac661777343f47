from claude_vm import main as main_module

if __name__ == "__main__":
    main_module.main()
